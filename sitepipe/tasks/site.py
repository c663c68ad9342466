"""Site builder tasks: ``build``, ``verify`` and ``markdown-fix``."""

import os

from sitepipe.engines import BuildRequest, EngineRequest, VerifyReport, VerifyRequest
from sitepipe.exceptions import ConfigurationError, TaskFailedError
from sitepipe.pipeline.options import StepOptions
from sitepipe.pipeline.policy import VerifyPolicy
from sitepipe.pipeline.structures import BuildOutput, ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.pipeline.summary import bucket_warnings, format_warning_buckets
from sitepipe.utils.logging import logger

from .base import succeeded


def run_build(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    config = options.path(context.base_dir, "config")
    out = options.path(context.base_dir, "out", "output")
    if config is None or out is None:
        raise ConfigurationError("build requires config and out.")

    builder = runtime.collaborators.require("builder", "build")
    report = builder.build(BuildRequest(config=config, out=out, clean=bool(options.boolean("clean", default=False))))

    output_path = os.path.abspath(report.output_path or out)
    logger.info("{label}: build wrote {n} updated file(s)", label=step.label, n=len(report.updated_files))
    return succeeded(
        step,
        f"Built {report.output_path or out}",
        BuildOutput(output_path=output_path, updated_files=tuple(report.updated_files)),
    )


def log_warning_summary(label: str, warnings: list[str], options: StepOptions, runtime: TaskRuntime) -> None:
    if not warnings or not options.boolean("warningSummary", default=True):
        return
    top = options.integer("warningSummaryTop", default=runtime.limit("warning_buckets"))
    logger.warning(
        "{label}: {n} warning(s) by code: {buckets}",
        label=label,
        n=len(warnings),
        buckets=format_warning_buckets(bucket_warnings(warnings, top)),
    )


def verify_site(
    step: PipelineStep,
    options: StepOptions,
    config: str,
    context: ExecutionContext,
    runtime: TaskRuntime,
) -> tuple[VerifyReport, list[str], list[str]]:
    """Run the verifier and apply the warning policy.

    Returns the raw report, the warnings left after suppression, and any
    policy failures.
    """
    builder = runtime.collaborators.require("builder", step.task)
    report = builder.verify(VerifyRequest(config=config))
    policy = VerifyPolicy.from_options(options, runtime.environ, context.fast, context.effective_mode)
    warnings = policy.filter_warnings(report.warnings)
    log_warning_summary(step.label, warnings, options, runtime)
    return report, warnings, policy.evaluate(report.errors, report.warnings)


def run_verify(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    config = options.path(context.base_dir, "config")
    if config is None:
        raise ConfigurationError("verify requires config.")

    _report, warnings, failures = verify_site(step, options, config, context, runtime)
    if failures:
        raise TaskFailedError(failures[0], {"failures": failures})
    return succeeded(step, f"Verify {len(warnings)} warnings" if warnings else "Verify ok")


def run_markdown_fix(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    root = options.path(context.base_dir, "root", "path", "siteRoot")
    config = options.path(context.base_dir, "config")
    if root is None and config is None:
        raise ConfigurationError("markdown-fix requires root/path/siteRoot or config.")

    apply = bool(options.boolean("apply", default=False))
    paths = {"root": root} if root else {"config": config}
    engine = runtime.collaborators.require("content", "markdown-fix")
    report = engine.run(EngineRequest(
        task="markdown-fix",
        base_dir=os.path.abspath(str(context.base_dir)),
        options=dict(step.options),
        paths=paths,
        include=options.string_list("include"),
        fast=context.fast,
        mode=context.effective_mode,
    ))
    if not report.success:
        raise TaskFailedError(
            report.errors[0] if report.errors else "markdown-fix failed.",
            {"errors": report.errors},
        )

    counters = report.counters
    verb = "updated" if apply else "dry-run"
    return succeeded(
        step,
        f"Markdown fix {verb} {counters.get('changed', 0)}/{counters.get('files', 0)} files "
        f"({counters.get('replacements', 0)} replacements)",
    )
