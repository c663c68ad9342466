"""``audit``: hand the built site to the auditor and gate on its report."""

import os

from sitepipe.engines import AuditReport, AuditRequest
from sitepipe.exceptions import ConfigurationError, TaskFailedError
from sitepipe.pipeline.options import StepOptions, resolve_path_within_root
from sitepipe.pipeline.policy import ensure_explicit_checks, fast_step_options
from sitepipe.pipeline.scope import build_html_scope
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.pipeline.summary import build_audit_failure_summary, build_audit_summary

from .base import succeeded

DEFAULT_BASELINE = ".sitepipe/audit-baseline.json"
SUMMARY_FILE = "audit-summary.json"
SARIF_FILE = "audit.sarif.json"


def _artifact_path(
    options: StepOptions,
    site_root: str,
    base_dir: str,
    flag: str,
    path_keys: tuple[str, ...],
    on_fail_keys: tuple[str, ...],
    file_name: str,
    on_fail_default: str,
) -> tuple[str | None, bool]:
    """Return ``(path, on_fail_only)`` for an audit summary or SARIF file.

    A requested file is written on every run and lives under ``site_root``.
    Otherwise the on-fail fallback goes to the state directory and the
    auditor writes it only when the audit fails.
    """
    explicit = options.string(*path_keys)
    if options.boolean(flag, default=False) or explicit is not None:
        return resolve_path_within_root(site_root, explicit, file_name, root_name="site root"), False
    if options.boolean(*on_fail_keys, default=True):
        return resolve_path_within_root(base_dir, None, on_fail_default), True
    return None, False


def build_audit_request(
    step: PipelineStep,
    options: StepOptions,
    site_root: str,
    context: ExecutionContext,
    runtime: TaskRuntime,
    scope: bool = True,
) -> AuditRequest:
    """Translate step options into an ``AuditRequest``, applying scope and guard."""
    checks = ensure_explicit_checks(step.task, options)
    base_dir = os.path.abspath(str(context.base_dir))

    include = options.string_list("include")
    scoped = build_html_scope(context, options, site_root, include, step.label) if scope else None
    if scoped is not None:
        include = scoped

    baseline_generate = bool(options.boolean("baselineGenerate", default=False))
    baseline_update = bool(options.boolean("baselineUpdate", default=False))
    baseline = options.string("baselinePath", "baseline")
    if (baseline_generate or baseline_update) and baseline is None:
        baseline = DEFAULT_BASELINE

    summary_path, summary_on_fail = _artifact_path(
        options, site_root, base_dir, "summary", ("summaryPath",), ("summaryOnFail",),
        SUMMARY_FILE, runtime.path("audit_summary"),
    )
    sarif_path, sarif_on_fail = _artifact_path(
        options, site_root, base_dir, "sarif", ("sarifPath",), ("sarifOnFail",),
        SARIF_FILE, runtime.path("audit_sarif"),
    )

    return AuditRequest(
        site_root=site_root,
        include=include or [],
        exclude=options.string_list("exclude") or [],
        max_html_files=max(0, options.integer("maxHtmlFiles", default=0)),
        rendered=bool(options.boolean("rendered", default=False)),
        checks=checks,
        summary_path=summary_path,
        summary_on_fail=summary_on_fail,
        sarif_path=sarif_path,
        sarif_on_fail=sarif_on_fail,
        baseline_path=resolve_path_within_root(base_dir, baseline, DEFAULT_BASELINE) if baseline else None,
        write_baseline=baseline_generate or baseline_update,
        fail_on_warnings=bool(options.boolean("failOnWarnings", default=False)),
        fail_on_new_issues=bool(options.boolean("failOnNewIssues", "failOnNew", default=False)),
        options=dict(options.raw),
    )


def audit_failure(report: AuditReport, options: StepOptions, runtime: TaskRuntime) -> TaskFailedError:
    preview = options.integer("errorPreviewCount", default=runtime.limit("error_preview_default"))
    return TaskFailedError(
        build_audit_failure_summary(report, preview),
        {"errors": report.error_count, "warnings": report.warning_count},
    )


def run_audit(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = fast_step_options(step, context)
    site_root = options.path(context.base_dir, "siteRoot")
    if site_root is None:
        raise ConfigurationError("audit requires siteRoot.")

    request = build_audit_request(step, options, site_root, context, runtime)
    auditor = runtime.collaborators.require("auditor", "audit")
    report = auditor.audit(request)

    if not report.success:
        raise audit_failure(report, options, runtime)

    baseline = (report.baseline_path or request.baseline_path) if request.write_baseline else None
    return succeeded(step, build_audit_summary(report, baseline))
