"""Content tasks delegated to the configured ``ContentEngine``.

Each task is described by a ``ContentTask`` row: which options must be set,
which options are paths to resolve against the pipeline root, and whether
the task narrows to the last build's updated pages. The handler validates,
resolves and forwards; generation itself is the engine's job.
"""

import os
from dataclasses import dataclass

from sitepipe.engines import EngineRequest
from sitepipe.exceptions import ConfigurationError, TaskFailedError
from sitepipe.pipeline.globs import relative_posix
from sitepipe.pipeline.options import StepOptions, is_within, same_path
from sitepipe.pipeline.scope import build_html_scope, updated_html_files
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.pipeline.summary import bucket_warnings, format_warning_buckets
from sitepipe.utils.logging import logger

from .base import succeeded
from .files import page_url

DEFAULT_MAX_URLS = 10_000


@dataclass(frozen=True)
class Requirement:
    names: tuple[str, ...]
    message: str
    kind: str = "string"


@dataclass(frozen=True)
class ContentTask:
    task: str
    requires: tuple[Requirement, ...] = ()
    paths: tuple[tuple[str, tuple[str, ...]], ...] = ()
    scoped: bool = False


def _req(message: str, *names: str, kind: str = "string") -> Requirement:
    return Requirement(names=names, message=message, kind=kind)


_OUT = ("out", ("out", "output"))
_SITE_ROOT = ("siteRoot", ("siteRoot",))
_CONFIG = ("config", ("config",))

CONTENT_TASKS: dict[str, ContentTask] = {
    spec.task: spec
    for spec in (
        ContentTask(
            "nav-export",
            requires=(_req("nav-export requires config.", "config"),),
            paths=(_CONFIG, _OUT),
        ),
        ContentTask(
            "apidocs",
            requires=(_req("apidocs requires out.", "out", "output"),),
            paths=(_OUT, ("xml", ("xml",)), ("help", ("help", "helpPath")), ("assembly", ("assembly", "dll"))),
        ),
        ContentTask(
            "changelog",
            requires=(_req("changelog requires out.", "out", "output"),),
            paths=(_OUT, ("source", ("source", "changelog", "input"))),
        ),
        ContentTask(
            "version-hub",
            requires=(_req("version-hub requires out.", "out", "output"),),
            paths=(_OUT, ("discoverRoot", ("discoverRoot", "root"))),
        ),
        ContentTask(
            "package-hub",
            requires=(_req("package-hub requires out.", "out", "output"),),
            paths=(_OUT, ("project", ("project", "projectPath")), ("module", ("module", "modulePath"))),
        ),
        ContentTask(
            "llms",
            requires=(_req("llms requires siteRoot.", "siteRoot"),),
            paths=(_SITE_ROOT, ("out", ("out", "output")), ("apiIndex", ("apiIndex",))),
        ),
        ContentTask(
            "compat-matrix",
            requires=(_req("compat-matrix requires out.", "out", "output"),),
            paths=(_OUT, ("markdownOut", ("markdownOut",))),
        ),
        ContentTask(
            "xref-merge",
            requires=(
                _req("xref-merge requires out.", "out", "output"),
                _req(
                    "xref-merge requires at least one input map path (map/maps/input/inputs/source/sources).",
                    "map", "maps", "input", "inputs", "source", "sources",
                    kind="list",
                ),
            ),
            paths=(_OUT,),
        ),
        ContentTask(
            "seo-doctor",
            requires=(_req("seo-doctor requires siteRoot.", "siteRoot"),),
            paths=(_SITE_ROOT, ("reportPath", ("reportPath",)), ("summaryPath", ("summaryPath",))),
            scoped=True,
        ),
        ContentTask(
            "hosting",
            requires=(_req("hosting requires siteRoot.", "siteRoot"),),
            paths=(_SITE_ROOT,),
        ),
        ContentTask(
            "cloudflare",
            paths=(
                ("siteConfig", ("siteConfig", "config")),
                ("reportPath", ("reportPath",)),
                ("summaryPath", ("summaryPath",)),
            ),
        ),
        ContentTask(
            "indexnow",
            paths=(
                _SITE_ROOT,
                ("sitemap", ("sitemap", "sitemapPath")),
                ("urlFile", ("urlFile",)),
                ("keyPath", ("keyPath",)),
            ),
        ),
        ContentTask(
            "model-transform",
            requires=(
                _req("model-transform requires input.", "input", "inputPath", "source"),
                _req("model-transform requires out/output path.", "out", "output", "outputPath", "destination", "dest"),
                _req("model-transform requires operations.", "operations", "ops", kind="array"),
            ),
            paths=(
                ("input", ("input", "inputPath", "source")),
                ("out", ("out", "output", "outputPath", "destination", "dest")),
            ),
        ),
        ContentTask(
            "sources-sync",
            requires=(_req("sources-sync requires config.", "config"),),
            paths=(_CONFIG, ("lockPath", ("lockPath", "lock"))),
        ),
    )
}


def check_requirements(spec: ContentTask, options: StepOptions) -> None:
    for requirement in spec.requires:
        if requirement.kind == "list":
            present = bool(options.string_list(*requirement.names))
        elif requirement.kind == "array":
            value = options.get(*requirement.names)
            present = isinstance(value, list) and len(value) > 0
        else:
            present = options.string(*requirement.names) is not None
        if not present:
            raise ConfigurationError(requirement.message)


def resolve_paths(spec: ContentTask, options: StepOptions, base_dir: str) -> dict[str, str]:
    resolved: dict[str, str] = {}
    for name, aliases in spec.paths:
        value = options.path(base_dir, *aliases)
        if value is not None:
            resolved[name] = value
    return resolved


def indexnow_urls(options: StepOptions, context: ExecutionContext, site_root: str | None) -> list[str]:
    """Explicit URLs and paths, plus pages the last build updated under ``siteRoot``."""
    base_url = options.string("baseUrl")
    urls = list(options.string_list("urls", "url") or [])

    paths = options.string_list("paths", "path") or []
    if paths:
        if not base_url:
            raise ConfigurationError("indexnow: missing 'baseUrl' (required when using paths).")
        urls += [base_url.rstrip("/") + "/" + path.lstrip("/") for path in paths]

    scope = options.boolean("scopeFromBuildUpdated")
    if (
        (scope is True or (scope is not False and context.fast))
        and base_url
        and site_root
        and context.last_build_updated_files
        and same_path(site_root, context.last_build_output_path)
    ):
        for page in updated_html_files(context.last_build_updated_files):
            if is_within(site_root, page):
                urls.append(base_url.rstrip("/") + page_url(relative_posix(site_root, page)))

    unique: list[str] = []
    seen: set[str] = set()
    for url in urls:
        key = url.strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(url.strip())

    max_urls = options.integer("maxUrls", default=DEFAULT_MAX_URLS)
    if max_urls > 0 and len(unique) > max_urls:
        if not options.boolean("truncateToMaxUrls", default=True):
            raise ConfigurationError(f"indexnow: URL count {len(unique)} exceeds maxUrls {max_urls}.")
        unique = unique[:max_urls]
    return unique


def run_content_task(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    spec = CONTENT_TASKS[step.task]
    options = StepOptions(step.options)
    check_requirements(spec, options)
    base_dir = os.path.abspath(str(context.base_dir))
    paths = resolve_paths(spec, options, base_dir)

    include = None
    if spec.scoped:
        include = options.string_list("include")
        scoped = build_html_scope(context, options, paths["siteRoot"], include, step.label)
        if scoped is not None:
            include = scoped

    urls = None
    if step.task == "indexnow":
        urls = indexnow_urls(options, context, paths.get("siteRoot"))
        if not urls and not paths.get("sitemap") and not paths.get("urlFile"):
            if options.boolean("failOnEmpty", default=False):
                raise TaskFailedError("indexnow: no URLs to submit.")
            return succeeded(step, "indexnow: no URLs to submit.")

    engine = runtime.collaborators.require("content", step.task)
    report = engine.run(EngineRequest(
        task=step.task,
        base_dir=base_dir,
        options=dict(step.options),
        paths=paths,
        include=include,
        urls=urls,
        fast=context.fast,
        mode=context.effective_mode,
    ))

    if report.warnings:
        logger.warning(
            "{label}: {n} warning(s): {buckets}",
            label=step.label,
            n=len(report.warnings),
            buckets=format_warning_buckets(bucket_warnings(report.warnings, runtime.limit("warning_buckets"))),
        )
    if not report.success:
        raise TaskFailedError(
            report.errors[0] if report.errors else f"{step.task} failed.",
            {"errors": report.errors, "outputs": report.outputs},
        )

    summary = report.summary.strip()
    return succeeded(step, f"{step.task} ok: {summary}" if summary else f"{step.task} ok")
