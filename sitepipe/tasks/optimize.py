"""``optimize``: asset optimization with image budget and failure gates."""

import os

from sitepipe.engines import OptimizeRequest
from sitepipe.exceptions import ConfigurationError, TaskFailedError
from sitepipe.pipeline.options import StepOptions, resolve_path_within_root
from sitepipe.pipeline.policy import fast_step_options
from sitepipe.pipeline.process import truncate_for_log
from sitepipe.pipeline.scope import build_html_scope
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.pipeline.summary import build_optimize_summary

from .base import succeeded

FAILURE_SAMPLES = 3

_TOGGLES = (
    ("minifyHtml",),
    ("minifyCss",),
    ("minifyJs",),
    ("optimizeImages", "images"),
    ("hashAssets",),
    ("cacheHeaders", "headers"),
)


def wants_report(options: StepOptions) -> bool:
    return any(options.boolean(*names, default=False) for names in _TOGGLES)


def run_optimize(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    # the default report is decided by what the user asked for, before fast mode
    requested = StepOptions(step.options)
    options = fast_step_options(step, context)
    site_root = options.path(context.base_dir, "siteRoot")
    if site_root is None:
        raise ConfigurationError("optimize requires siteRoot.")

    base_dir = os.path.abspath(str(context.base_dir))
    report_path = options.path(context.base_dir, "reportPath")
    if report_path is None and wants_report(requested):
        report_path = resolve_path_within_root(base_dir, None, runtime.path("optimize_report"))

    html_include = options.string_list("htmlInclude")
    scoped = build_html_scope(context, options, site_root, html_include, step.label)
    if scoped is not None:
        html_include = scoped

    optimizer = runtime.collaborators.require("optimizer", "optimize")
    report = optimizer.optimize(OptimizeRequest(
        site_root=site_root,
        html_include=html_include or [],
        html_exclude=options.string_list("htmlExclude") or [],
        max_html_files=max(0, options.integer("maxHtmlFiles", default=0)),
        critical_css=options.path(context.base_dir, "criticalCss"),
        minify_html=bool(options.boolean("minifyHtml", default=False)),
        minify_css=bool(options.boolean("minifyCss", default=False)),
        minify_js=bool(options.boolean("minifyJs", default=False)),
        optimize_images=bool(options.boolean("optimizeImages", "images", default=False)),
        hash_assets=bool(options.boolean("hashAssets", default=False)),
        cache_headers=bool(options.boolean("cacheHeaders", "headers", default=False)),
        report_path=report_path,
        options=dict(options.raw),
    ))

    if options.boolean("imageFailOnBudget", default=False) and report.image_budget_exceeded:
        raise TaskFailedError(f"Image budget exceeded: {' | '.join(report.image_budget_warnings)}")

    if options.boolean("imageFailOnFailures", "imageFailOnErrors", default=False) and report.image_failures:
        sample = [
            f"{failure.path} ({truncate_for_log(failure.error, 120)})"
            for failure in report.image_failures
            if failure.path and failure.path.strip()
        ][:FAILURE_SAMPLES]
        sample_text = f" Sample: {' | '.join(sample)}" if sample else ""
        raise TaskFailedError(f"Image optimization failures: {len(report.image_failures)}.{sample_text}")

    return succeeded(step, build_optimize_summary(report))
