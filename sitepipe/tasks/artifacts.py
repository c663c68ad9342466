"""``github-artifacts-prune``: retention cleanup for CI artifacts."""

import re

from sitepipe.engines import PruneReport, PruneRequest
from sitepipe.exceptions import ConfigurationError, TaskFailedError
from sitepipe.pipeline.options import StepOptions, resolve_path_within_root
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.utils.constants import ENV_GITHUB_REPOSITORY, ENV_GITHUB_TOKEN
from sitepipe.utils.logging import logger

from .base import succeeded, write_json, write_text

TASK = "github-artifacts-prune"
SUMMARY_ROWS = 100
SUMMARY_FAILURES = 50

_NAME_SEPARATORS = re.compile(r"[,;\n\r\t]")


def read_names(options: StepOptions, *names: str) -> list[str]:
    values: list[str] = []
    for name in names:
        values.extend(options.string_list(name, pattern=_NAME_SEPARATORS) or [])
    return values


def prune_message(report: PruneReport) -> str:
    mode = "dry-run" if report.dry_run else "applied"
    text = (
        f"{TASK}: {mode}, scanned {report.scanned_artifacts}, "
        f"matched {report.matched_artifacts}, planned {report.planned_deletes}"
    )
    if not report.dry_run:
        text += f", deleted {report.deleted_artifacts}, failed {report.failed_deletes}"
    if report.message and report.message.strip():
        text += f", note: {report.message}"
    return text


def render_prune_summary(report: PruneReport) -> str:
    """Markdown summary suitable for a CI job summary."""
    lines = [
        "# GitHub Artifact Cleanup",
        "",
        f"- Repository: {report.repository}",
        f"- Mode: {'dry-run' if report.dry_run else 'apply'}",
        f"- Scanned artifacts: {report.scanned_artifacts}",
        f"- Matched artifacts: {report.matched_artifacts}",
        f"- Planned deletes: {report.planned_deletes}",
        f"- Planned bytes: {report.planned_delete_bytes}",
        f"- Keep latest per name: {report.keep_latest_per_name}",
        f"- Max age days: {report.max_age_days if report.max_age_days is not None else 'disabled'}",
        f"- Max delete: {report.max_delete}",
    ]
    if not report.dry_run:
        lines += [
            f"- Deleted artifacts: {report.deleted_artifacts}",
            f"- Deleted bytes: {report.deleted_bytes}",
            f"- Failed deletes: {report.failed_deletes}",
        ]

    lines += ["", "| Artifact | ID | Size (bytes) | Reason |", "| --- | ---: | ---: | --- |"]
    for item in report.planned[:SUMMARY_ROWS]:
        lines.append(f"| {item.name} | {item.id} | {item.size_in_bytes} | {item.reason or ''} |")
    if len(report.planned) > SUMMARY_ROWS:
        omitted = len(report.planned) - SUMMARY_ROWS
        lines.append(f"| ... | ... | ... | {omitted} additional planned entries omitted |")

    if not report.dry_run and report.failed:
        lines += ["", "## Failed Deletes", ""]
        for item in report.failed[:SUMMARY_FAILURES]:
            lines.append(f"- `{item.name}` (`{item.id}`): {item.delete_error}")

    return "\n".join(lines) + "\n"


def write_prune_artifacts(base_dir: str, report_path: str | None, summary_path: str | None, report: PruneReport) -> None:
    if report_path:
        write_json(resolve_path_within_root(base_dir, report_path, report_path), report.to_dict())
    if summary_path:
        write_text(resolve_path_within_root(base_dir, summary_path, summary_path), render_prune_summary(report))


def _skipped(repository: str, message: str) -> PruneReport:
    return PruneReport(repository=repository, dry_run=True, success=True, message=message)


def run_github_artifacts_prune(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    base_dir = str(context.base_dir)
    continue_on_error = bool(options.boolean("continueOnError", default=False))
    optional = bool(options.boolean("optional", default=False))
    optional_repository = options.boolean("optionalRepository", "skipIfMissingRepository", default=optional)
    optional_token = options.boolean("optionalToken", "skipIfMissingToken", default=optional)
    report_path = options.string("reportPath")
    summary_path = options.string("summaryPath")

    repo_env = options.string("repoEnv", default=ENV_GITHUB_REPOSITORY)
    repository = options.string("repo", "repository", "githubRepository") or (runtime.environ.get(repo_env) or "").strip()
    if not repository:
        hint = f"(set '{repo_env}' or provide repo/repository)"
        if not optional_repository:
            raise ConfigurationError(f"{TASK}: missing repository {hint}.")
        write_prune_artifacts(base_dir, report_path, summary_path, _skipped("", f"Skipped: missing repository {hint}."))
        return succeeded(step, f"{TASK} skipped: missing repository.")

    token_env = options.string("tokenEnv", default=ENV_GITHUB_TOKEN)
    token = options.string("token", "apiToken") or (runtime.environ.get(token_env) or "").strip()
    if not token:
        hint = f"(set '{token_env}' or provide token)"
        if not optional_token:
            raise ConfigurationError(f"{TASK}: missing token {hint}.")
        write_prune_artifacts(base_dir, report_path, summary_path, _skipped(repository, f"Skipped: missing token {hint}."))
        return succeeded(step, f"{TASK} skipped: missing token.")

    dry_run = bool(options.boolean("dryRun", default=True))
    if options.boolean("apply") or options.boolean("execute"):
        dry_run = False

    keep = options.integer("keep", "keepLatestPerName", default=5)
    if keep < 0:
        raise ConfigurationError(f"{TASK}: keep must be >= 0.")
    max_age_days = options.integer("maxAgeDays", "ageDays", default=7)
    max_delete = options.integer("maxDelete", "limit", default=200)
    if max_delete < 1:
        raise ConfigurationError(f"{TASK}: maxDelete must be >= 1.")
    page_size = options.integer("pageSize", default=100)
    if page_size < 1 or page_size > 100:
        raise ConfigurationError(f"{TASK}: pageSize must be between 1 and 100.")

    request = PruneRequest(
        repository=repository,
        token=token,
        api_base_url=options.string("apiBaseUrl"),
        include_names=read_names(options, "names", "name", "include", "includes"),
        exclude_names=read_names(options, "exclude", "excludes", "excludeNames"),
        keep_latest_per_name=keep,
        max_age_days=max_age_days if max_age_days >= 1 else None,
        max_delete=max_delete,
        page_size=page_size,
        dry_run=dry_run,
        fail_on_delete_error=bool(options.boolean("failOnDeleteError", default=False)),
    )

    pruner = runtime.collaborators.require("pruner", TASK)
    try:
        report = pruner.prune(request)
    except Exception as e:
        if not continue_on_error:
            raise
        logger.warning("{label}: artifact cleanup failed: {err}", label=step.label, err=e)
        failed = _skipped(repository, f"Cleanup failed: {e}")
        failed.dry_run = dry_run
        failed.success = False
        write_prune_artifacts(base_dir, report_path, summary_path, failed)
        return succeeded(step, f"{TASK} allowed failure: {e}")

    write_prune_artifacts(base_dir, report_path, summary_path, report)
    message = prune_message(report)
    if not report.success:
        if continue_on_error:
            return succeeded(step, f"{TASK} allowed failure: {message}")
        raise TaskFailedError(message)
    return succeeded(step, message)
