"""Tests for sequential pipeline execution."""

import json
from dataclasses import FrozenInstanceError

import pytest

from sitepipe.pipeline.cache import (
    CacheState,
    compute_fingerprint,
    expected_outputs,
    is_cacheable,
    load_cache,
    path_stamp,
    save_cache,
)
from sitepipe.pipeline.dispatch import TASK_HANDLERS, dispatch
from sitepipe.pipeline.loader import load_pipeline
from sitepipe.pipeline.runner import RunOptions, run_pipeline, skip_reason
from sitepipe.pipeline.structures import ExecutionContext

from .conftest import make_step, python_command, write_pipeline


class RecordingObserver:
    """Collects observer callbacks as tuples."""

    def __init__(self):
        self.events = []

    def on_pipeline_start(self, path, total):
        self.events.append(("start", total))

    def on_step_start(self, label, index, total):
        self.events.append(("step", label))

    def on_step_complete(self, label, message, elapsed, cached=False):
        self.events.append(("ok", label, cached))

    def on_step_failed(self, label, error, tolerated=False):
        self.events.append(("failed", label, tolerated))

    def on_step_skipped(self, label, reason):
        self.events.append(("skipped", label, reason))

    def on_log(self, message, is_error=False):
        self.events.append(("log", message))


def exec_step(code: str, **extra) -> dict:
    return {"task": "exec", **python_command(code), **extra}


def run_file(path, runtime, **options):
    observer = RecordingObserver()
    result = run_pipeline(load_pipeline(str(path)), runtime, RunOptions(**options), observer)
    return result, observer


class TestDispatch:
    def test_unknown_task_fails_without_raising(self, context, runtime):
        result = dispatch(make_step("publish-to-mars"), context, runtime)
        assert not result.success
        assert result.message == "Unknown task"

    def test_every_task_has_a_handler(self):
        expected = {
            "build", "verify", "markdown-fix", "sitemap", "optimize", "audit", "doctor",
            "dotnet-build", "dotnet-publish", "overlay", "hook", "html-transform",
            "data-transform", "exec", "git-sync", "github-artifacts-prune",
            "nav-export", "apidocs", "changelog", "version-hub", "package-hub", "llms",
            "compat-matrix", "xref-merge", "seo-doctor", "hosting", "cloudflare",
            "indexnow", "model-transform", "sources-sync",
        }
        assert set(TASK_HANDLERS) == expected


class TestFailureSemantics:
    """Abort, continue-on-error and dependency checks."""

    def test_failure_aborts_remaining_steps(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [
            exec_step("pass"),
            exec_step("import sys; sys.exit(1)"),
            exec_step("pass"),
        ])
        result, observer = run_file(path, runtime)

        assert not result.success
        assert result.aborted
        assert result.step_count == 2
        assert result.steps[1].message.startswith("exec failed with exit code 1")
        assert ("failed", "[2/3] exec", False) in observer.events

    def test_failed_last_step_is_not_an_abort(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [exec_step("pass"), exec_step("import sys; sys.exit(1)")])
        result, _ = run_file(path, runtime)
        assert not result.success
        assert not result.aborted

    def test_continue_on_error_keeps_going(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [
            {"task": "sitemap", "continueOnError": True},
            exec_step("pass"),
        ])
        result, observer = run_file(path, runtime)

        assert result.step_count == 2
        assert not result.steps[0].success
        assert "sitemap requires siteRoot and baseUrl" in result.steps[0].message
        assert result.steps[1].success
        assert not result.success
        assert ("failed", "[1/2] sitemap", True) in observer.events

    def test_timeout_aborts_even_with_continue_on_error(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [
            exec_step("import time; time.sleep(5)", timeoutSeconds=1, continueOnError=True),
            exec_step("pass"),
        ])
        result, _ = run_file(path, runtime)

        assert result.step_count == 1
        assert result.aborted
        assert "timed out after 1s" in result.steps[0].message

    def test_unknown_task_result_aborts(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [{"task": "nope"}, exec_step("pass")])
        result, _ = run_file(path, runtime)
        assert result.step_count == 1
        assert result.steps[0].message.startswith("Unknown task")

    def test_failed_dependency_blocks_step(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [
            {"task": "sitemap", "id": "map", "continueOnError": True},
            exec_step("pass", dependsOn="map", continueOnError=True),
            exec_step("pass"),
        ])
        result, _ = run_file(path, runtime)

        assert result.step_count == 2
        assert "dependency #1 failed or was not executed" in result.steps[1].message
        assert result.aborted

    def test_skipped_dependency_counts_as_not_executed(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [
            exec_step("pass", id="first", skipModes="default"),
            exec_step("pass", dependsOn="first"),
        ])
        result, observer = run_file(path, runtime)

        assert ("skipped", "[1/2] exec", "mode=default") in observer.events
        assert result.step_count == 1
        assert "dependency #1 failed or was not executed" in result.steps[0].message


class TestFilters:
    def test_skip_beats_only(self):
        step = make_step("audit")
        assert skip_reason(step, "default", only=("audit",), skip=("audit",)) == "skip"

    def test_only_filter(self):
        assert skip_reason(make_step("audit"), "default", only=("build",), skip=()) == "only"
        assert skip_reason(make_step("build"), "default", only=("build",), skip=()) is None

    def test_mode_filters_are_case_insensitive(self):
        assert skip_reason(make_step("audit", skipModes=["DEV"]), "dev", (), ()) == "mode=dev"
        assert skip_reason(make_step("audit", modes="ci,release"), "dev", (), ()) == "mode=dev"
        assert skip_reason(make_step("audit", modes="ci,release"), "CI", (), ()) is None

    def test_dev_implies_fast_and_mode(self):
        options = RunOptions(dev=True)
        assert options.effective_fast
        assert options.effective_mode == "dev"
        assert RunOptions(dev=True, mode="ci").effective_mode == "ci"


class TestBuildCarryover:
    """A build's output scopes later steps."""

    def test_scoped_task_receives_updated_pages(self, tmp_path, runtime, engines):
        engines.builder.pages = {"index.html": "a", "docs/page.html": "b", "site.css": "c"}
        path = write_pipeline(tmp_path / "pipeline.json", [
            {"task": "build", "config": "site.json", "out": "_site"},
            {"task": "seo-doctor", "siteRoot": "_site", "scopeFromBuildUpdated": True},
        ])
        result, _ = run_file(path, runtime)

        assert result.success
        request = engines.content.requests[0]
        assert sorted(request.include) == sorted([
            str(tmp_path / "_site" / "index.html"),
            str(tmp_path / "_site" / "docs" / "page.html"),
        ])

    def test_fast_mode_scopes_without_opt_in(self, tmp_path, runtime, engines):
        path = write_pipeline(tmp_path / "pipeline.json", [
            {"task": "build", "config": "site.json", "out": "_site"},
            {"task": "seo-doctor", "siteRoot": "_site"},
        ])
        run_file(path, runtime, fast=True)
        assert engines.content.requests[0].include == [str(tmp_path / "_site" / "index.html")]

    def test_explicit_include_wins(self, tmp_path, runtime, engines):
        path = write_pipeline(tmp_path / "pipeline.json", [
            {"task": "build", "config": "site.json", "out": "_site"},
            {"task": "seo-doctor", "siteRoot": "_site", "scopeFromBuildUpdated": True, "include": "docs/**"},
        ])
        run_file(path, runtime)
        assert engines.content.requests[0].include == ["docs/**"]

    def test_other_root_is_not_scoped(self, tmp_path, runtime, engines):
        path = write_pipeline(tmp_path / "pipeline.json", [
            {"task": "build", "config": "site.json", "out": "_site"},
            {"task": "seo-doctor", "siteRoot": "other", "scopeFromBuildUpdated": True},
        ])
        run_file(path, runtime)
        assert engines.content.requests[0].include is None


class TestStepCache:
    def _pipeline(self, tmp_path):
        site = tmp_path / "_site"
        site.mkdir()
        (site / "index.html").write_text("<h1>hi</h1>", encoding="utf-8")
        return write_pipeline(
            tmp_path / "pipeline.json",
            [{"task": "sitemap", "siteRoot": "_site", "baseUrl": "https://example.test"}],
            cache=True,
        )

    def test_second_run_is_served_from_cache(self, tmp_path, runtime):
        path = self._pipeline(tmp_path)

        first, _ = run_file(path, runtime)
        second, observer = run_file(path, runtime)

        assert not first.steps[0].cached
        assert second.steps[0].cached
        assert second.steps[0].message.startswith("Sitemap 1 urls")
        assert ("ok", "[1/1] sitemap", True) in observer.events
        assert (tmp_path / ".sitepipe" / "pipeline-cache.json").is_file()

    def test_missing_output_invalidates_cache(self, tmp_path, runtime):
        path = self._pipeline(tmp_path)
        run_file(path, runtime)
        (tmp_path / "_site" / "sitemap.xml").unlink()

        result, _ = run_file(path, runtime)
        assert not result.steps[0].cached

    def test_no_cache_flag_bypasses_cache(self, tmp_path, runtime):
        path = self._pipeline(tmp_path)
        run_file(path, runtime)
        result, _ = run_file(path, runtime, no_cache=True)
        assert not result.steps[0].cached

    def test_process_tasks_are_never_cached(self):
        assert not is_cacheable("exec")
        assert not is_cacheable("indexnow")
        assert is_cacheable("build")

    def test_corrupt_cache_file_starts_empty(self, tmp_path):
        cache_file = tmp_path / "cache.json"
        cache_file.write_text("{not json", encoding="utf-8")
        assert load_cache(str(cache_file)).entries == {}

    def test_cache_round_trip_keeps_messages(self, tmp_path):
        state = CacheState()
        state.record("1:build", "abc", "Built _site")
        save_cache(str(tmp_path / "cache.json"), state)

        loaded = load_cache(str(tmp_path / "cache.json"))
        assert loaded.lookup("1:build").message == "Built _site"
        assert not state.dirty

    def test_fingerprint_tracks_named_paths(self, tmp_path):
        (tmp_path / "site.json").write_text("{}", encoding="utf-8")
        options = {"task": "build", "config": "site.json", "baseUrl": "https://example.test"}
        before = compute_fingerprint(str(tmp_path), options)
        (tmp_path / "site.json").write_text('{"title": "changed"}', encoding="utf-8")
        assert compute_fingerprint(str(tmp_path), options) != before

    def test_path_stamps(self, tmp_path):
        assert path_stamp(str(tmp_path / "missing")) == f"m|{tmp_path / 'missing'}"
        (tmp_path / "a").write_text("x", encoding="utf-8")
        (tmp_path / "b").write_text("y", encoding="utf-8")
        assert path_stamp(str(tmp_path), max_files=1).endswith("|truncated")

    def test_audit_with_summary_is_served_from_cache(self, tmp_path, site_root, runtime, engines):
        path = write_pipeline(
            tmp_path / "pipeline.json",
            [{"task": "audit", "siteRoot": "_site", "summary": True}],
            cache=True,
        )

        run_file(path, runtime)
        second, _ = run_file(path, runtime)

        assert (site_root / "audit-summary.json").is_file()
        assert second.steps[0].cached
        assert len(engines.auditor.requests) == 1

    def test_expected_outputs_for_audit_summary(self, tmp_path):
        outputs = expected_outputs("audit", {"siteRoot": "_site", "summary": True}, str(tmp_path))
        assert outputs == [str(tmp_path / "_site" / "audit-summary.json")]

    def test_expected_outputs_for_sitemap_default(self, tmp_path):
        outputs = expected_outputs("sitemap", {"siteRoot": "_site"}, str(tmp_path))
        assert outputs == [str(tmp_path / "_site" / "sitemap.xml")]


class TestProfile:
    def test_profile_written_on_failure_by_default(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [exec_step("import sys; sys.exit(3)")])
        result, _ = run_file(path, runtime)

        profile = tmp_path / ".sitepipe" / "pipeline-profile.json"
        assert result.profile_path == str(profile)
        data = json.loads(profile.read_text())
        assert data["success"] is False
        assert data["stepCount"] == 1
        assert data["steps"][0]["task"] == "exec"

    def test_no_profile_for_clean_run(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [exec_step("pass")])
        result, _ = run_file(path, runtime)
        assert result.profile_path is None

    def test_profile_flag_and_custom_path(self, tmp_path, runtime):
        path = write_pipeline(tmp_path / "pipeline.json", [exec_step("pass")], profilePath="out/profile.json")
        result, _ = run_file(path, runtime, profile=True)
        assert (tmp_path / "out" / "profile.json").is_file()
        assert result.to_dict()["profilePath"] == str(tmp_path / "out" / "profile.json")

    def test_profile_path_outside_root_rejected(self, tmp_path, runtime):
        from sitepipe.exceptions import ConfigurationError

        path = write_pipeline(tmp_path / "pipeline.json", [exec_step("pass")], profilePath="../profile.json")
        with pytest.raises(ConfigurationError):
            run_file(path, runtime)


class TestContextIsolation:
    def test_context_is_frozen(self, tmp_path):
        context = ExecutionContext(base_dir=tmp_path)
        with pytest.raises(FrozenInstanceError):
            context.fast = True
