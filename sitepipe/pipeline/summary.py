"""Bounded, human-readable summaries of step outcomes."""

import re
from collections import Counter
from typing import TYPE_CHECKING

from .process import truncate_for_log

if TYPE_CHECKING:
    from sitepipe.engines import AuditIssue, AuditReport, OptimizeReport, VerifyReport

_WARNING_CODE = re.compile(r"^\s*\[([^\[\]\s]+)\]")

ERROR_PREVIEW_MAX = 50
ISSUE_SAMPLE_MAX = 5
HEADLINE_CHARS = 180
ERROR_CHARS = 220


def format_duration(elapsed_ms: float) -> str:
    if elapsed_ms < 1000:
        return f"{elapsed_ms:.0f} ms"
    seconds = elapsed_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f} s"
    return f"{seconds / 60:.1f} min"


def append_duration(message: str | None, elapsed_ms: float) -> str:
    return f"{message or 'Completed'} ({format_duration(elapsed_ms)})"


def bucket_warnings(warnings: list[str], top: int = 5) -> list[tuple[str, int]]:
    """Count warnings by their leading ``[CODE]`` token.

    Codes are upper-cased. The ``top`` largest buckets are kept (ties broken
    alphabetically); everything else, uncoded warnings included, lands in
    ``OTHER``.
    """
    counts: Counter[str] = Counter()
    uncoded = 0
    for warning in warnings:
        if not warning or not warning.strip():
            continue
        match = _WARNING_CODE.match(warning)
        if match:
            counts[match.group(1).upper()] += 1
        else:
            uncoded += 1

    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    keep = max(0, top)
    buckets = ranked[:keep]
    other = uncoded + sum(count for _, count in ranked[keep:])
    if other > 0:
        buckets.append(("OTHER", other))
    return buckets


def format_warning_buckets(buckets: list[tuple[str, int]]) -> str:
    return ", ".join(f"{code}={count}" for code, count in buckets)


def is_gate_issue(issue: "AuditIssue") -> bool:
    if (issue.category or "").strip().lower() == "gate":
        return True
    return (issue.message or "").lower().startswith("audit gate failed")


def format_issue(issue: "AuditIssue") -> str:
    severity = issue.severity if issue.severity and issue.severity.strip() else "warning"
    category = issue.category if issue.category and issue.category.strip() else "general"
    location = f" {issue.path}" if issue.path and issue.path.strip() else ""
    message = issue.message if issue.message and issue.message.strip() else "issue reported"
    return truncate_for_log(f"[{severity}] [{category}]{location} {message}", ERROR_CHARS)


def _is_error(issue: "AuditIssue") -> bool:
    return (issue.severity or "").strip().lower() == "error"


def _has_message(issue: "AuditIssue") -> bool:
    return bool(issue.message and issue.message.strip())


def audit_failure_headline(report: "AuditReport") -> str | None:
    for issue in report.issues:
        if _is_error(issue) and not is_gate_issue(issue) and _has_message(issue):
            return format_issue(issue)
    for error in report.errors:
        if error and error.strip():
            return error
    for issue in report.issues:
        if _has_message(issue):
            return format_issue(issue)
    return None


def build_audit_summary(report: "AuditReport", baseline_path: str | None = None) -> str:
    parts = [
        f"pages {report.page_count}",
        f"links {report.link_count}",
        f"assets {report.asset_count}",
    ]
    selected, total = report.html_selected_count, report.html_file_count
    if selected > 0 and total > 0 and selected != total:
        parts.insert(0, f"html-scope {selected}/{total}")

    if report.broken_link_count > 0:
        parts.append(f"broken-links {report.broken_link_count}")
    if report.missing_asset_count > 0:
        parts.append(f"missing-assets {report.missing_asset_count}")
    parts.append(f"nav-checked {report.nav_checked_count}")
    if report.nav_ignored_count > 0:
        parts.append(f"nav-ignored {report.nav_ignored_count}")
    parts.append(f"nav-coverage {report.nav_coverage_percent:.1f}%")
    if report.nav_mismatch_count > 0:
        parts.append(f"nav-mismatches {report.nav_mismatch_count}")
    if report.required_route_count > 0:
        parts.append(f"required-routes {report.required_route_count}")
    if report.missing_required_route_count > 0:
        parts.append(f"missing-required-routes {report.missing_required_route_count}")
    if report.warning_count > 0:
        parts.append(f"warnings {report.warning_count}")
    if report.new_issue_count > 0:
        parts.append(f"new {report.new_issue_count}")
    if report.sarif_path:
        parts.append("sarif")

    message = f"Audit ok {', '.join(parts)}"
    if baseline_path:
        message += f", baseline {baseline_path}"
    return message


def build_audit_failure_summary(report: "AuditReport", preview_count: int) -> str:
    """One-line failure digest: headline, artifact paths, error and issue samples."""
    safe_count = min(max(preview_count, 0), ERROR_PREVIEW_MAX)
    headline = audit_failure_headline(report)
    error_total = len(report.errors)
    head = f"Audit failed ({error_total} errors)"
    if headline and headline.strip():
        head += f": {truncate_for_log(headline, HEADLINE_CHARS)}"
    parts = [head]

    if report.summary_path:
        parts.append(f"summary {report.summary_path}")
    if report.sarif_path:
        parts.append(f"sarif {report.sarif_path}")

    if safe_count <= 0 or error_total == 0:
        return ", ".join(parts)

    preview = [
        truncate_for_log(error, ERROR_CHARS)
        for error in report.errors
        if error and error.strip()
    ][:safe_count]
    if not preview:
        return ", ".join(parts)

    preview_text = " | ".join(preview)
    remaining = error_total - len(preview)
    if remaining > 0:
        preview_text += f" | +{remaining} more"
    parts.append(f"sample: {preview_text}")

    issue_count = min(safe_count, ISSUE_SAMPLE_MAX)
    if report.issues and issue_count > 0:
        candidates = [issue for issue in report.issues if not is_gate_issue(issue)] or list(report.issues)
        sample = [issue for issue in candidates if _is_error(issue)][:issue_count]
        if not sample:
            sample = [issue for issue in candidates if _has_message(issue)][:issue_count]
        if sample:
            issue_text = " | ".join(format_issue(issue) for issue in sample)
            issue_remaining = len(report.issues) - len(sample)
            if issue_remaining > 0:
                issue_text += f" | +{issue_remaining} more issues"
            parts.append(f"issues: {issue_text}")

    return ", ".join(parts)


def build_optimize_summary(report: "OptimizeReport") -> str:
    parts = [f"updated {report.updated_count}"]
    selected, total = report.html_selected_count, report.html_file_count
    if selected > 0 and total > 0 and selected != total:
        parts.append(f"html-scope {selected}/{total}")

    counters = (
        ("critical-css", report.critical_css_inlined_count, ""),
        ("html", report.html_minified_count, ""),
        ("css", report.css_minified_count, ""),
        ("js", report.js_minified_count, ""),
        ("html-saved", report.html_bytes_saved, "B"),
        ("css-saved", report.css_bytes_saved, "B"),
        ("js-saved", report.js_bytes_saved, "B"),
        ("images", report.image_optimized_count, ""),
        ("images-saved", report.image_bytes_saved, "B"),
        ("image-fails", len(report.image_failures), ""),
        ("image-variants", report.image_variant_count, ""),
        ("image-rewrites", report.image_rewrite_count, ""),
        ("image-hints", report.image_hinted_count, ""),
    )
    for name, value, unit in counters:
        if value > 0:
            parts.append(f"{name} {value}{unit}")

    if report.optimized_images:
        top = report.optimized_images[0]
        parts.append(f"top-image {top.path}(-{top.bytes_saved}B)")
    if report.image_failures:
        failure = report.image_failures[0]
        parts.append(f"top-fail {failure.path}({truncate_for_log(failure.error, 90)})")
    if report.image_budget_exceeded:
        parts.append("image-budget-exceeded")
    if report.hashed_asset_count > 0:
        parts.append(f"hashed {report.hashed_asset_count}")
    if report.cache_headers_written:
        parts.append("headers")
    if report.report_path:
        parts.append(f"report {report.report_path}")

    return f"Optimize {', '.join(parts)}"


def build_doctor_summary(
    verify: "VerifyReport | None",
    audit: "AuditReport | None",
    build_executed: bool,
    verify_executed: bool,
    audit_executed: bool,
    policy_failures: list[str] | None = None,
) -> str:
    parts = [
        "build" if build_executed else "no-build",
        "verify" if verify_executed else "no-verify",
        "audit" if audit_executed else "no-audit",
    ]
    if verify is not None:
        parts.append(f"verify {len(verify.errors)}e/{len(verify.warnings)}w")
    if audit is not None:
        parts.append(f"audit {audit.error_count}e/{audit.warning_count}w")
        if audit.summary_path:
            parts.append("summary")
        if audit.sarif_path:
            parts.append("sarif")
    if policy_failures:
        parts.append(f"verify-policy {len(policy_failures)}")
    return f"Doctor ok {', '.join(parts)}"
