"""``data-transform``: pipe one input file through an external program.

In ``stdin`` mode the input content is written to the program's stdin; in
``file`` mode the program is expected to read ``SITEPIPE_DATA_INPUT`` (or the
``{input}`` token) itself. The output either comes from captured stdout or,
in ``passthrough`` mode, is written by the program directly.
"""

import os

from sitepipe.exceptions import ConfigurationError, PreconditionError, ProcessFailedError
from sitepipe.pipeline.options import StepOptions
from sitepipe.pipeline.process import (
    build_arguments,
    build_environment,
    environment_values,
    run_process,
    with_preview,
)
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime

from .base import (
    COMMAND_KEYS,
    ENV_KEYS,
    allows_failure,
    read_text_or_none,
    succeeded,
    utc_now,
    working_directory,
    write_json,
    write_text,
)

INPUT_KEYS = ("input", "inputPath", "source", "sourcePath")
OUTPUT_KEYS = ("out", "output", "outputPath", "destination", "dest")

INPUT_MODES = {"stdin": "stdin", "file": "file"}
WRITE_MODES = {"stdout": "stdout", "passthrough": "passthrough", "file": "passthrough"}


def normalize_input_mode(value: str | None) -> str:
    if value is None:
        return "stdin"
    mode = INPUT_MODES.get(value.strip().lower())
    if mode is None:
        raise ConfigurationError(
            f"data-transform has unsupported mode '{value}'. Supported values: stdin, file."
        )
    return mode


def normalize_write_mode(value: str | None) -> str:
    if value is None:
        return "stdout"
    mode = WRITE_MODES.get(value.strip().lower())
    if mode is None:
        raise ConfigurationError(
            f"data-transform has unsupported writeMode '{value}'. Supported values: stdout, passthrough."
        )
    return mode


def run_data_transform(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    base = context.base_dir
    mode = normalize_input_mode(options.string("inputMode", "transformMode"))
    write_mode = normalize_write_mode(options.string("writeMode"))
    input_path = options.path(base, *INPUT_KEYS)
    output_path = options.path(base, *OUTPUT_KEYS)
    command = options.string(*COMMAND_KEYS)
    require_output = options.boolean("requireOutput", default=True)
    report_path = options.path(base, "reportPath")
    workdir = working_directory(options, context)
    tolerate = allows_failure(options)

    if input_path is None:
        raise ConfigurationError("data-transform requires input.")
    if not os.path.isfile(input_path):
        raise PreconditionError(f"data-transform input file not found: {input_path}")
    if output_path is None:
        raise ConfigurationError("data-transform requires out/output path.")
    if command is None:
        raise ConfigurationError("data-transform requires command.")

    input_content = read_text_or_none(input_path) or ""
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    before = read_text_or_none(output_path)

    tokens = {
        "input": input_path,
        "output": output_path,
        "baseDir": os.path.abspath(base),
    }
    injected = {
        "SITEPIPE_DATA_INPUT": input_path,
        "SITEPIPE_DATA_OUTPUT": output_path,
        "SITEPIPE_DATA_BASEDIR": tokens["baseDir"],
        "SITEPIPE_DATA_MODE": mode,
        "SITEPIPE_DATA_WRITE_MODE": write_mode,
    }
    env = build_environment(
        runtime.environ,
        injected,
        environment_values(options.mapping(*ENV_KEYS), tokens),
    )

    timeout = options.integer("timeoutSeconds")
    effective_timeout = timeout if timeout and timeout > 0 else runtime.timeout("data_transform")
    result = run_process(
        command,
        build_arguments(options, tokens),
        task="data-transform",
        working_directory=workdir,
        env=env,
        stdin=input_content if mode == "stdin" else None,
        timeout_seconds=effective_timeout,
        default_timeout=runtime.timeout("data_transform"),
        timeout_message=f"data-transform timed out after {effective_timeout}s.",
    )

    preview = result.preview(runtime.limit("preview_chars"))
    if result.exit_code != 0 and not tolerate:
        raise ProcessFailedError(
            with_preview(f"data-transform failed with exit code {result.exit_code}: {command}", preview),
            result.exit_code,
            preview,
        )

    if result.exit_code == 0 and write_mode == "stdout":
        if require_output and not result.stdout.strip():
            raise ProcessFailedError("data-transform produced empty stdout output.", 0)
        write_text(output_path, result.stdout)

    if result.exit_code == 0 and write_mode == "passthrough" and require_output and not os.path.isfile(output_path):
        raise ProcessFailedError(f"data-transform passthrough mode did not produce output: {output_path}", 0)

    after = read_text_or_none(output_path)
    changed = before != after

    if report_path:
        write_json(report_path, {
            "input": os.path.abspath(input_path),
            "output": os.path.abspath(output_path),
            "mode": mode,
            "writeMode": write_mode,
            "exitCode": result.exit_code,
            "changed": changed,
            "allowedFailure": tolerate and result.exit_code != 0,
            "errorPreview": None if result.exit_code == 0 else preview,
            "utc": utc_now(),
        })

    if result.exit_code != 0:
        return succeeded(
            step,
            with_preview(f"data-transform allowed failure (exit {result.exit_code}): {command}", preview),
        )

    message = (
        f"data-transform ok: updated '{output_path}'."
        if changed
        else f"data-transform ok: no output changes for '{output_path}'."
    )
    return succeeded(step, with_preview(message, preview))
