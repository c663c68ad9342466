"""Lifecycle hooks: run a command for a named pipeline event."""

import os

from sitepipe.exceptions import ConfigurationError, ProcessFailedError
from sitepipe.pipeline.options import StepOptions, resolve_path
from sitepipe.pipeline.process import (
    build_arguments,
    build_environment,
    environment_values,
    run_process,
    with_preview,
)
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.utils.logging import logger

from .base import COMMAND_KEYS, ENV_KEYS, allows_failure, succeeded, utc_now, working_directory, write_json, write_text


def write_hook_context(
    options: StepOptions,
    event: str,
    step: PipelineStep,
    context: ExecutionContext,
    workdir: str,
) -> str | None:
    """Write the JSON context file for hook consumers, if one was requested."""
    path = options.path(context.base_dir, "contextPath", "context")
    if path is None:
        return None

    payload = {
        "event": event,
        "label": step.label,
        "stepId": options.string("id"),
        "mode": context.effective_mode,
        "baseDirectory": os.path.abspath(context.base_dir),
        "workingDirectory": os.path.abspath(workdir),
        "utc": utc_now(),
    }
    write_json(path, payload)
    return os.path.abspath(path)


def run_hook(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    event = options.string("event", "hook", "name")
    command = options.string(*COMMAND_KEYS)
    workdir = working_directory(options, context)

    if event is None:
        raise ConfigurationError("hook requires event.")
    if command is None:
        raise ConfigurationError("hook requires command.")

    context_path = None
    if os.path.isdir(workdir):
        context_path = write_hook_context(options, event, step, context, workdir)
    stdout_path = options.path(context.base_dir, "stdoutPath", "stdout")
    stderr_path = options.path(context.base_dir, "stderrPath", "stderr")

    injected = {
        "SITEPIPE_HOOK_EVENT": event,
        "SITEPIPE_HOOK_LABEL": step.label,
        "SITEPIPE_HOOK_MODE": context.effective_mode,
        "SITEPIPE_HOOK_WORKDIR": workdir,
        "SITEPIPE_HOOK_BASEDIR": os.path.abspath(context.base_dir),
    }
    step_id = options.string("id")
    if step_id:
        injected["SITEPIPE_HOOK_ID"] = step_id
    if context_path:
        injected["SITEPIPE_HOOK_CONTEXT"] = context_path

    env = build_environment(runtime.environ, injected, environment_values(options.mapping(*ENV_KEYS)))
    result = run_process(
        command,
        build_arguments(options),
        task="hook",
        working_directory=workdir,
        env=env,
        timeout_seconds=options.integer("timeoutSeconds"),
        default_timeout=runtime.timeout("hook"),
    )

    if stdout_path:
        write_text(stdout_path, result.stdout.strip())
    if stderr_path:
        write_text(stderr_path, result.stderr.strip())

    preview = result.preview(runtime.limit("preview_chars"))
    if result.exit_code != 0:
        if not allows_failure(options):
            raise ProcessFailedError(
                with_preview(f"hook '{event}' failed with exit code {result.exit_code}: {command}", preview),
                result.exit_code,
                preview,
            )
        logger.warning("hook '{event}' exited {code}; failure allowed", event=event, code=result.exit_code)
        return succeeded(step, with_preview(f"hook '{event}' allowed failure (exit {result.exit_code}): {command}", preview))

    message = with_preview(f"hook ok: {event} ({command})", preview)
    if context_path:
        message += f" context={context_path}"
    return succeeded(step, message)
