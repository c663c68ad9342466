"""Tests for external process supervision and the process-backed tasks."""

import json
import sys

import psutil
import pytest

from sitepipe.exceptions import PreconditionError, ProcessFailedError, StepTimeoutError
from sitepipe.pipeline.process import first_non_empty_line, replace_tokens, run_process, truncate_for_log
from sitepipe.tasks.command import run_exec
from sitepipe.tasks.data_transform import run_data_transform
from sitepipe.tasks.hook import run_hook
from sitepipe.tasks.html_transform import run_html_transform

from .conftest import make_step, python_command


class TestRunProcess:
    """The shared supervision primitive."""

    def test_captures_both_streams(self, tmp_path):
        code = "import sys; print('out line'); print('err line', file=sys.stderr)"
        result = run_process(sys.executable, ["-c", code], task="exec", working_directory=str(tmp_path))

        assert result.exit_code == 0
        assert result.stdout.strip() == "out line"
        assert result.stderr.strip() == "err line"

    def test_preview_prefers_stderr(self, tmp_path):
        code = "import sys; print('from stdout'); print('\\n  \\nfrom stderr', file=sys.stderr); sys.exit(3)"
        result = run_process(sys.executable, ["-c", code], task="exec", working_directory=str(tmp_path))

        assert result.exit_code == 3
        assert result.preview() == "from stderr"

    def test_missing_working_directory_is_fatal_before_spawn(self, tmp_path):
        with pytest.raises(PreconditionError, match="working directory not found"):
            run_process(sys.executable, ["-c", "pass"], task="exec", working_directory=str(tmp_path / "missing"))

    def test_timeout_kills_whole_tree(self, tmp_path):
        """A 1s timeout on a sleeper that spawned a child leaves no survivor."""
        pid_file = tmp_path / "child.pid"
        code = (
            "import subprocess, sys, time;"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)']);"
            f"open({str(pid_file)!r}, 'w').write(str(child.pid));"
            "time.sleep(5)"
        )

        with pytest.raises(StepTimeoutError) as exc_info:
            run_process(
                sys.executable,
                ["-c", code],
                task="exec",
                working_directory=str(tmp_path),
                timeout_seconds=1,
            )

        assert exc_info.value.timeout_seconds == 1
        assert "timed out after 1s" in str(exc_info.value)

        child_pid = int(pid_file.read_text())
        if psutil.pid_exists(child_pid):
            child = psutil.Process(child_pid)
            try:
                child.wait(timeout=5)
            except psutil.NoSuchProcess:
                pass
            assert not child.is_running() or child.status() == psutil.STATUS_ZOMBIE

    def test_non_positive_timeout_uses_default(self, tmp_path):
        result = run_process(
            sys.executable,
            ["-c", "pass"],
            task="exec",
            working_directory=str(tmp_path),
            timeout_seconds=0,
            default_timeout=30,
        )
        assert result.success


class TestPreviewHelpers:
    def test_truncate_flattens_newlines(self):
        assert truncate_for_log("a\nb\r\nc", 200) == "a b c"

    def test_truncate_adds_ellipsis(self):
        assert truncate_for_log("x" * 50, 10) == "xxxxxxx..."

    def test_first_non_empty_line_searches_in_order(self):
        assert first_non_empty_line("", "  \n", "second\nthird") == "second"

    def test_tokens_are_case_insensitive(self):
        assert replace_tokens("{INPUT} -> {output}", {"input": "a.json", "output": "b.json"}) == "a.json -> b.json"


class TestExecTask:
    def test_ok_message_includes_preview(self, context, runtime):
        step = make_step("exec", **python_command("print('hello')"))
        result = run_exec(step, context, runtime)

        assert result.success
        assert result.message.startswith(f"exec ok: {sys.executable}")
        assert result.message.endswith("(hello)")

    def test_nonzero_exit_fails(self, context, runtime):
        step = make_step("exec", **python_command("import sys; sys.exit(2)"))
        with pytest.raises(ProcessFailedError, match="exec failed with exit code 2") as exc_info:
            run_exec(step, context, runtime)
        assert exc_info.value.exit_code == 2

    def test_allow_failure_succeeds(self, context, runtime):
        step = make_step("exec", allowFailure=True, **python_command("import sys; print('boom', file=sys.stderr); sys.exit(4)"))
        result = run_exec(step, context, runtime)

        assert result.success
        assert "allowed failure (exit 4)" in result.message
        assert "(boom)" in result.message

    def test_timeout_is_never_tolerated(self, context, runtime):
        step = make_step("exec", allowFailure=True, timeoutSeconds=1, **python_command("import time; time.sleep(5)"))
        with pytest.raises(StepTimeoutError):
            run_exec(step, context, runtime)


class TestHookTask:
    def test_injects_environment_and_writes_context(self, tmp_path, context, runtime):
        code = (
            "import json, os;"
            "print(json.dumps({k: v for k, v in os.environ.items() if k.startswith('SITEPIPE_HOOK_')}))"
        )
        step = make_step(
            "hook",
            event="pre-build",
            id="warmup",
            contextPath="hook/context.json",
            stdoutPath="hook/stdout.txt",
            **python_command(code),
        )
        result = run_hook(step, context, runtime)

        assert result.success
        assert result.message.startswith("hook ok: pre-build")
        env = json.loads((tmp_path / "hook" / "stdout.txt").read_text())
        assert env["SITEPIPE_HOOK_EVENT"] == "pre-build"
        assert env["SITEPIPE_HOOK_LABEL"] == "[1/1] hook"
        assert env["SITEPIPE_HOOK_MODE"] == "default"
        assert env["SITEPIPE_HOOK_ID"] == "warmup"
        assert env["SITEPIPE_HOOK_CONTEXT"].endswith("context.json")

        payload = json.loads((tmp_path / "hook" / "context.json").read_text())
        assert payload["event"] == "pre-build"
        assert payload["stepId"] == "warmup"
        assert set(payload) == {"event", "label", "stepId", "mode", "baseDirectory", "workingDirectory", "utc"}

    def test_requires_event(self, context, runtime):
        from sitepipe.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError, match="hook requires event"):
            run_hook(make_step("hook", **python_command("pass")), context, runtime)


class TestDataTransform:
    """Change detection and reporting for data-transform."""

    UPPER = "import sys; sys.stdout.write(sys.stdin.read().upper())"

    def test_first_run_reports_change(self, tmp_path, context, runtime):
        (tmp_path / "in.txt").write_text("hello", encoding="utf-8")
        step = make_step("data-transform", input="in.txt", out="out/result.txt", reportPath="report.json", **python_command(self.UPPER))

        result = run_data_transform(step, context, runtime)

        assert result.success
        assert "updated" in result.message
        assert (tmp_path / "out" / "result.txt").read_text() == "HELLO"
        report = json.loads((tmp_path / "report.json").read_text())
        assert report["changed"] is True
        assert report["exitCode"] == 0
        assert report["allowedFailure"] is False

    def test_unchanged_output_is_not_changed(self, tmp_path, context, runtime):
        (tmp_path / "in.txt").write_text("hello", encoding="utf-8")
        step = make_step("data-transform", input="in.txt", out="result.txt", reportPath="report.json", **python_command(self.UPPER))

        run_data_transform(step, context, runtime)
        result = run_data_transform(step, context, runtime)

        assert "no output changes" in result.message
        assert json.loads((tmp_path / "report.json").read_text())["changed"] is False

    def test_non_utf8_input_is_read_with_replacement(self, tmp_path, context, runtime):
        (tmp_path / "in.txt").write_bytes("caf\xe9".encode("latin-1"))
        code = "import sys; sys.stdin.buffer.read(); sys.stdout.write('ok')"
        step = make_step("data-transform", input="in.txt", out="result.txt", **python_command(code))

        result = run_data_transform(step, context, runtime)

        assert result.success
        assert (tmp_path / "result.txt").read_text() == "ok"

    def test_passthrough_mode_uses_file_written_by_process(self, tmp_path, context, runtime):
        (tmp_path / "in.txt").write_text("abc", encoding="utf-8")
        code = (
            "import os;"
            "data = open(os.environ['SITEPIPE_DATA_INPUT']).read();"
            "open(os.environ['SITEPIPE_DATA_OUTPUT'], 'w').write(data[::-1])"
        )
        step = make_step("data-transform", input="in.txt", out="out.txt", inputMode="file", writeMode="passthrough", **python_command(code))

        result = run_data_transform(step, context, runtime)

        assert result.success
        assert (tmp_path / "out.txt").read_text() == "cba"

    def test_empty_stdout_fails_when_output_required(self, tmp_path, context, runtime):
        (tmp_path / "in.txt").write_text("abc", encoding="utf-8")
        step = make_step("data-transform", input="in.txt", out="out.txt", **python_command("pass"))

        with pytest.raises(ProcessFailedError, match="empty stdout"):
            run_data_transform(step, context, runtime)

    def test_missing_input_is_precondition(self, context, runtime):
        step = make_step("data-transform", input="nope.txt", out="out.txt", **python_command("pass"))
        with pytest.raises(PreconditionError):
            run_data_transform(step, context, runtime)


class TestHtmlTransform:
    def test_non_utf8_page_does_not_abort(self, site_root, context, runtime):
        (site_root / "legacy.html").write_bytes("<p>caf\xe9</p>".encode("latin-1"))
        step = make_step("html-transform", siteRoot="_site", include=["legacy.html"], **python_command("pass"))

        result = run_html_transform(step, context, runtime)

        assert result.message == "html-transform ok: processed 1, changed 0."
        assert (site_root / "legacy.html").read_bytes() == "<p>caf\xe9</p>".encode("latin-1")

    def test_rewrites_selected_pages_in_place(self, site_root, context, runtime):
        code = (
            "import os;"
            "path = os.environ['SITEPIPE_TRANSFORM_FILE'];"
            "text = open(path).read();"
            "open(path, 'w').write(text.replace('<h1>', '<h1 class=t>'))"
        )
        step = make_step("html-transform", siteRoot="_site", include=["docs/**"], **python_command(code))

        result = run_html_transform(step, context, runtime)

        assert result.success
        assert result.message == "html-transform ok: processed 2, changed 2."
        assert "class=t" in (site_root / "docs" / "intro.html").read_text()
        assert "class=t" not in (site_root / "index.html").read_text()
