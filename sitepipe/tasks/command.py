"""The generic ``exec`` task."""

from sitepipe.exceptions import ProcessFailedError
from sitepipe.pipeline.options import StepOptions
from sitepipe.pipeline.process import (
    build_arguments,
    build_environment,
    environment_values,
    run_process,
    with_preview,
)
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime

from .base import COMMAND_KEYS, ENV_KEYS, allows_failure, succeeded, working_directory


def run_exec(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    command = options.require_string("exec requires command.", *COMMAND_KEYS)

    result = run_process(
        command,
        build_arguments(options),
        task="exec",
        working_directory=working_directory(options, context),
        env=build_environment(runtime.environ, environment_values(options.mapping(*ENV_KEYS))),
        timeout_seconds=options.integer("timeoutSeconds"),
        default_timeout=runtime.timeout("exec"),
    )

    preview = result.preview(runtime.limit("preview_chars"))
    if result.exit_code != 0:
        if not allows_failure(options):
            raise ProcessFailedError(
                with_preview(f"exec failed with exit code {result.exit_code}: {command}", preview),
                result.exit_code,
                preview,
            )
        return succeeded(step, with_preview(f"exec allowed failure (exit {result.exit_code}): {command}", preview))

    return succeeded(step, with_preview(f"exec ok: {command}", preview))
