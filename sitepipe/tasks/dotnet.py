"""``dotnet-build`` and ``dotnet-publish`` through the process supervisor."""

import os

from sitepipe.exceptions import ConfigurationError, ProcessFailedError
from sitepipe.pipeline.options import StepOptions
from sitepipe.pipeline.process import build_environment, run_process, truncate_for_log
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime

from .base import clean_directory, succeeded, working_directory


def _common_args(options: StepOptions) -> list[str]:
    args: list[str] = []
    for flag, name in (("-c", "configuration"), ("-f", "framework"), ("-r", "runtime")):
        value = options.string(name)
        if value:
            args += [flag, value]
    return args


def _run_dotnet(args: list[str], options: StepOptions, context: ExecutionContext, runtime: TaskRuntime, task: str):
    result = run_process(
        "dotnet",
        args,
        task=task,
        working_directory=working_directory(options, context),
        env=build_environment(runtime.environ, {"DOTNET_CLI_TELEMETRY_OPTOUT": "1"}),
        timeout_seconds=options.integer("timeoutSeconds"),
        default_timeout=runtime.timeout("dotnet"),
    )
    if result.exit_code != 0:
        # dotnet reports compile errors on stdout
        detail = result.stderr.strip() or result.stdout.strip()
        raise ProcessFailedError(
            truncate_for_log(detail, runtime.limit("error_chars")) or f"{task} failed with exit code {result.exit_code}",
            result.exit_code,
        )
    return result


def run_dotnet_build(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    project = options.path(context.base_dir, "project", "solution", "path")
    if project is None:
        raise ConfigurationError("dotnet-build requires project.")

    args = ["build", project, *_common_args(options)]
    if options.boolean("noRestore", default=False):
        args.append("--no-restore")
    _run_dotnet(args, options, context, runtime, "dotnet-build")
    return succeeded(step, "dotnet build ok")


def run_dotnet_publish(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    project = options.path(context.base_dir, "project")
    out = options.path(context.base_dir, "out", "output")
    if project is None or out is None:
        raise ConfigurationError("dotnet-publish requires project and out.")

    if options.boolean("clean", default=False):
        clean_directory(out)

    args = ["publish", project, "-o", out, *_common_args(options)]
    if options.boolean("selfContained", default=False):
        args.append("--self-contained")
    if options.boolean("noBuild", default=False):
        args.append("--no-build")
    if options.boolean("noRestore", default=False):
        args.append("--no-restore")
    define_constants = options.string("defineConstants")
    if define_constants:
        args.append(f"-p:DefineConstants={define_constants}")

    _run_dotnet(args, options, context, runtime, "dotnet-publish")
    return succeeded(step, "dotnet publish ok")
