"""``html-transform``: run a command once per generated page."""

import os

from sitepipe.exceptions import ConfigurationError, PreconditionError, ProcessFailedError, ProcessStartError
from sitepipe.pipeline.globs import collect_files, normalize_extensions, relative_posix
from sitepipe.pipeline.options import StepOptions
from sitepipe.pipeline.process import (
    build_arguments,
    build_environment,
    environment_values,
    first_non_empty_line,
    run_process,
    truncate_for_log,
)
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.utils.constants import HTML_EXTENSIONS
from sitepipe.utils.logging import logger

from .base import COMMAND_KEYS, ENV_KEYS, allows_failure, succeeded, working_directory, write_json

WRITE_MODES = {"inplace": "inplace", "file": "inplace", "stdout": "stdout"}


def normalize_write_mode(value: str | None) -> str:
    if value is None:
        return "inplace"
    mode = WRITE_MODES.get(value.strip().lower())
    if mode is None:
        raise ConfigurationError(
            f"html-transform has unsupported writeMode '{value}'. Supported values: inplace, stdout."
        )
    return mode


def run_html_transform(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    site_root = options.path(context.base_dir, "siteRoot")
    if site_root is None:
        raise ConfigurationError("html-transform requires siteRoot.")
    if not os.path.isdir(site_root):
        raise PreconditionError(f"html-transform siteRoot not found: {site_root}")

    command = options.string(*COMMAND_KEYS)
    if command is None:
        raise ConfigurationError("html-transform requires command.")

    tolerate = allows_failure(options)
    timeout = options.integer("timeoutSeconds", default=0)
    timeout = timeout if timeout > 0 else runtime.timeout("html_transform")
    workdir = working_directory(options, context, default=site_root)
    if not os.path.isdir(workdir):
        raise PreconditionError(f"html-transform working directory not found: {workdir}")

    write_mode = normalize_write_mode(options.string("writeMode"))
    use_stdin = options.boolean("stdin", "passContentToStdin", "passToStdin", default=False)
    require_output = options.boolean("requireOutput", default=write_mode == "stdout")
    report_path = options.path(context.base_dir, "reportPath")
    env_template = options.mapping(*ENV_KEYS)
    sample_limit = runtime.limit("transform_samples")
    sample_chars = runtime.limit("transform_sample_chars")

    files = collect_files(
        site_root,
        include=options.string_list("include", "includes", "includePatterns"),
        exclude=options.string_list("exclude", "excludes", "excludePatterns"),
        extensions=normalize_extensions(
            options.string_list("extensions", "ext", "fileExtensions"), HTML_EXTENSIONS
        ),
        max_files=options.integer("maxFiles", default=0),
    )

    report = {
        "siteRoot": os.path.abspath(site_root),
        "writeMode": write_mode,
        "processedCount": 0,
        "changedCount": 0,
        "failedCount": 0,
        "files": [],
    }
    if not files:
        if report_path:
            write_json(report_path, report)
        return succeeded(step, "html-transform ok: no matching files.")

    changed = 0
    failures = 0
    samples: list[str] = []
    for index, file_path in enumerate(files):
        relative = relative_posix(site_root, file_path)
        with open(file_path, encoding="utf-8", errors="replace") as f:
            original = f.read()
        entry = {"path": relative, "changed": False, "exitCode": None, "error": None}

        tokens = {
            "file": file_path,
            "relative": relative,
            "siteRoot": site_root,
            "index": str(index),
        }
        injected = {
            "SITEPIPE_TRANSFORM_FILE": file_path,
            "SITEPIPE_TRANSFORM_RELATIVE": relative,
            "SITEPIPE_TRANSFORM_SITE_ROOT": site_root,
            "SITEPIPE_TRANSFORM_INDEX": str(index),
        }
        try:
            result = run_process(
                command,
                build_arguments(options, tokens),
                task="html-transform",
                working_directory=workdir,
                env=build_environment(runtime.environ, injected, environment_values(env_template, tokens)),
                stdin=original if use_stdin else None,
                timeout_seconds=timeout,
                default_timeout=runtime.timeout("html_transform"),
                timeout_message=f"html-transform timed out after {timeout}s for '{relative}'.",
            )
        except ProcessStartError as e:
            if not tolerate:
                raise
            failures += 1
            entry["error"] = str(e)
            if len(samples) < sample_limit:
                samples.append(f"{relative}: {truncate_for_log(str(e), sample_chars)}")
            report["files"].append(entry)
            continue

        entry["exitCode"] = result.exit_code
        if result.exit_code != 0:
            preview = first_non_empty_line(result.stderr, result.stdout)
            error = (
                f"html-transform failed (exit {result.exit_code}) for '{relative}': {preview}"
                if preview
                else f"html-transform failed (exit {result.exit_code}) for '{relative}'."
            )
            if not tolerate:
                raise ProcessFailedError(error, result.exit_code, preview)
            failures += 1
            entry["error"] = error
            if len(samples) < sample_limit:
                samples.append(f"{relative}: {truncate_for_log(preview or f'exit {result.exit_code}', sample_chars)}")
            report["files"].append(entry)
            continue

        if write_mode == "stdout":
            if require_output and not result.stdout.strip():
                raise ProcessFailedError(f"html-transform stdout mode produced empty output for '{relative}'.", 0)
            if result.stdout != original:
                with open(file_path, "w", encoding="utf-8") as f:
                    f.write(result.stdout)
                entry["changed"] = True
        else:
            if not os.path.isfile(file_path):
                raise ProcessFailedError(f"html-transform in-place mode removed file '{relative}'.", 0)
            with open(file_path, encoding="utf-8", errors="replace") as f:
                entry["changed"] = f.read() != original

        if entry["changed"]:
            changed += 1
        report["files"].append(entry)

    report["processedCount"] = len(files)
    report["changedCount"] = changed
    report["failedCount"] = failures
    if report_path:
        write_json(report_path, report)

    logger.info("{label}: transformed {n} file(s), {c} changed", label=step.label, n=len(files), c=changed)
    message = f"html-transform ok: processed {len(files)}, changed {changed}."
    if failures:
        sample = f" Sample: {' | '.join(samples)}" if samples else ""
        message += f" allowed failures {failures}.{sample}"
    return succeeded(step, message)
