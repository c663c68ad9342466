"""Tests for fast-mode downgrades, explicit checks, verify policy and summaries."""

import pytest

from sitepipe.engines import AuditIssue, AuditReport, OptimizeReport, VerifyReport
from sitepipe.exceptions import ConfigurationError
from sitepipe.pipeline.options import StepOptions
from sitepipe.pipeline.policy import (
    VerifyPolicy,
    apply_fast_overrides,
    ensure_explicit_checks,
    is_ci,
)
from sitepipe.pipeline.summary import (
    append_duration,
    build_audit_failure_summary,
    build_audit_summary,
    build_doctor_summary,
    build_optimize_summary,
    bucket_warnings,
    format_warning_buckets,
)


class TestFastOverrides:
    """Fast mode forces expensive audit/optimize features off."""

    def test_noop_without_fast(self):
        raw = {"rendered": True}
        updated, forced = apply_fast_overrides("audit", raw, False, "[1/1] audit")
        assert updated == raw
        assert forced == []

    def test_audit_downgrades(self):
        updated, forced = apply_fast_overrides("audit", {"rendered": True}, True, "[1/1] audit")
        assert updated["rendered"] is False
        assert updated["maxHtmlFiles"] == 200
        assert forced == ["rendered=false", "maxHtmlFiles=200"]

    def test_explicit_limit_is_kept(self):
        updated, forced = apply_fast_overrides("audit", {"maxHtmlFiles": 20}, True, "[1/1] audit")
        assert updated["maxHtmlFiles"] == 20
        assert forced == []

    def test_second_pass_is_idempotent(self):
        first, _ = apply_fast_overrides("optimize", {"optimizeImages": True, "minifyCss": True}, True, "opt")
        second, forced = apply_fast_overrides("optimize", first, True, "opt")
        assert second == first
        assert forced == []

    def test_respect_explicit_keeps_minification(self):
        raw = {"minifyCss": True, "minifyJs": True, "hashAssets": True}
        updated, forced = apply_fast_overrides("optimize", raw, True, "opt", respect_explicit=True)
        assert updated["minifyCss"] is True
        assert updated["minifyJs"] is True
        assert updated["hashAssets"] is False
        assert "minifyCss=false" not in forced

    def test_alias_is_replaced_by_canonical_key(self):
        updated, forced = apply_fast_overrides("optimize", {"images": True}, True, "opt")
        assert "images" not in updated
        assert updated["optimizeImages"] is False
        assert "optimizeImages=false" in forced

    def test_other_tasks_untouched(self):
        updated, forced = apply_fast_overrides("sitemap", {"rendered": True}, True, "s")
        assert updated == {"rendered": True}
        assert forced == []


class TestExplicitChecks:
    def test_missing_checks_listed_in_order(self):
        options = StepOptions({"requireExplicitChecks": True, "checkSeoMeta": True, "checkHeadingOrder": False})
        with pytest.raises(ConfigurationError) as exc_info:
            ensure_explicit_checks("audit", options)
        message = str(exc_info.value)
        assert message.startswith("audit: requireExplicitChecks is enabled")
        assert message.endswith(
            "checkNetworkHints, checkRenderBlockingResources, checkLinkPurposeConsistency, checkMediaEmbeds"
        )

    def test_aliases_count_as_explicit(self):
        options = StepOptions({
            "requireExplicitChecks": True,
            "checkSeoMeta": True,
            "checkNetworkHints": True,
            "checkRenderBlocking": False,
            "checkHeadingOrder": True,
            "checkLinkPurpose": True,
            "checkMediaEmbeds": False,
        })
        checks = ensure_explicit_checks("audit", options)
        assert checks["checkRenderBlockingResources"] is False
        assert checks["checkLinkPurposeConsistency"] is True

    def test_not_required_returns_set_checks(self):
        assert ensure_explicit_checks("audit", StepOptions({"checkSeoMeta": False})) == {"checkSeoMeta": False}


class TestVerifyPolicy:
    def test_ci_detection(self):
        assert is_ci({"CI": "true"})
        assert is_ci({"GITHUB_ACTIONS": "1"})
        assert not is_ci({"CI": "false"})
        assert not is_ci({})

    def test_ci_enables_gates_unless_fast(self):
        strict = VerifyPolicy.from_options(StepOptions({}), {"CI": "true"}, fast=False, mode="default")
        relaxed = VerifyPolicy.from_options(StepOptions({}), {"CI": "true"}, fast=True, mode="default")
        dev = VerifyPolicy.from_options(StepOptions({}), {"CI": "true"}, fast=False, mode="Dev")
        assert strict.fail_on_nav_lint and strict.fail_on_theme_contract
        assert not relaxed.fail_on_nav_lint
        assert not dev.fail_on_theme_contract

    def test_explicit_option_overrides_ci_default(self):
        policy = VerifyPolicy.from_options(StepOptions({"failOnNavLint": False}), {"CI": "1"}, fast=False, mode="default")
        assert not policy.fail_on_nav_lint
        assert policy.fail_on_theme_contract

    def test_suppression_by_code_and_substring(self):
        policy = VerifyPolicy(suppress=("NAV", "legacy"))
        kept = policy.filter_warnings(["[NAV.menu] missing", "[THEME] legacy token", "[SEO] no title"])
        assert kept == ["[SEO] no title"]

    def test_evaluate_reports_each_gate(self):
        policy = VerifyPolicy(fail_on_warnings=True, fail_on_nav_lint=True, fail_on_theme_contract=True)
        failures = policy.evaluate(["broken xref"], ["[NAV] orphan", "[THEME] token"])
        assert failures[0] == "Web verify failed with 1 error(s): broken xref"
        assert failures[1].startswith("Verify warnings treated as errors (2 warning(s))")
        assert failures[2].startswith("Navigation lint warnings treated as errors (1 warning(s))")
        assert failures[3].startswith("Theme contract warnings treated as errors (1 warning(s))")

    def test_clean_run_has_no_failures(self):
        assert VerifyPolicy(fail_on_nav_lint=True).evaluate([], ["[SEO] hint"]) == []


class TestDurations:
    @pytest.mark.parametrize("elapsed, expected", [
        (12, "done (12 ms)"),
        (1500, "done (1.5 s)"),
        (90000, "done (1.5 min)"),
    ])
    def test_append_duration(self, elapsed, expected):
        assert append_duration("done", elapsed) == expected

    def test_blank_message_defaults(self):
        assert append_duration(None, 5) == "Completed (5 ms)"


class TestWarningBuckets:
    def test_top_buckets_and_other(self):
        buckets = bucket_warnings(["[A] x", "[A] y", "[B] z", "no-code w"], top=1)
        assert format_warning_buckets(buckets) == "A=2, OTHER=2"

    def test_codes_upper_cased_and_ties_alphabetical(self):
        buckets = bucket_warnings(["[b] one", "[a] two", "  ", ""], top=5)
        assert buckets == [("A", 1), ("B", 1)]


class TestAuditSummaries:
    def test_ok_summary(self):
        report = AuditReport(
            page_count=3,
            link_count=10,
            asset_count=4,
            nav_checked_count=3,
            nav_coverage_percent=100.0,
            html_file_count=10,
            html_selected_count=3,
            warnings=["[SEO] x"],
            sarif_path="/tmp/a.sarif",
        )
        summary = build_audit_summary(report, baseline_path="baseline.json")
        assert summary == (
            "Audit ok html-scope 3/10, pages 3, links 10, assets 4, nav-checked 3, "
            "nav-coverage 100.0%, warnings 1, sarif, baseline baseline.json"
        )

    def test_failure_headline_prefers_non_gate_error_issue(self):
        report = AuditReport(
            success=False,
            errors=["Audit gate failed: too many warnings"],
            issues=[
                AuditIssue(severity="error", category="gate", message="Audit gate failed"),
                AuditIssue(severity="error", category="links", path="docs/a.html", message="broken link"),
            ],
        )
        summary = build_audit_failure_summary(report, preview_count=5)
        assert "[error] [links] docs/a.html broken link" in summary


class TestOptimizeAndDoctorSummaries:
    def test_optimize_summary_lists_non_zero_counters(self):
        report = OptimizeReport(updated_count=2, css_minified_count=1, css_bytes_saved=120, hashed_asset_count=3)
        assert build_optimize_summary(report) == "Optimize updated 2, css 1, css-saved 120B, hashed 3"

    def test_doctor_summary(self):
        summary = build_doctor_summary(
            VerifyReport(errors=[], warnings=["w"]),
            AuditReport(errors=["e"]),
            build_executed=False,
            verify_executed=True,
            audit_executed=True,
        )
        assert summary == "Doctor ok no-build, verify, audit, verify 0e/1w, audit 1e/0w"
