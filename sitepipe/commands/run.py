"""Run a pipeline document."""

import json
import os
import sys
from pathlib import Path

import click
from rich.panel import Panel
from rich.text import Text

from sitepipe.config_runtime import load_runtime_config
from sitepipe.engines import load_collaborators
from sitepipe.events import ConsoleLogger
from sitepipe.exceptions import ConfigurationError
from sitepipe.pipeline.options import split_list
from sitepipe.pipeline.structures import PipelineResult
from sitepipe.pipeline.ui import console, print_error, print_status_panel, print_success, print_warning
from sitepipe.utils.error_handler import handle_exceptions
from sitepipe.utils.exit_codes import ExitCodes
from sitepipe.utils.logging import configure_file_logging, logger


def exit_code_for(result: PipelineResult) -> int:
    if result.success:
        return ExitCodes.SUCCESS
    if result.aborted:
        return ExitCodes.TASK_INCOMPLETE
    return ExitCodes.STEP_FAILED


def _task_filter(values: tuple[str, ...]) -> tuple[str, ...]:
    tasks: list[str] = []
    for value in values:
        tasks.extend(task.lower() for task in split_list(value))
    return tuple(tasks)


def print_pipeline_complete_panel(result: PipelineResult) -> None:
    """Print the PIPELINE COMPLETE panel with styled border."""
    failed = sum(1 for step in result.steps if not step.success)
    cached = sum(1 for step in result.steps if step.cached)
    seconds = result.duration_ms / 1000

    if failed == 0:
        title = "PIPELINE COMPLETE"
        status_line = f"All {result.step_count} steps successful ({cached} cached)"
        border_style = "green"
    elif result.aborted:
        title = "PIPELINE ABORTED"
        status_line = f"{failed} step(s) failed; remaining steps did not run"
        border_style = "red"
    else:
        title = "PIPELINE COMPLETE"
        status_line = f"{failed} of {result.step_count} steps failed"
        border_style = "yellow"

    detail = f"Total time: {seconds:.1f}s"
    if result.profile_path:
        detail += f"\nProfile: {result.profile_path}"

    panel = Panel(
        Text.assemble(
            (status_line + "\n", "bold " + border_style),
            (detail, "dim"),
        ),
        title=f"[bold]{title}[/bold]",
        border_style=border_style,
        expand=False,
    )
    console.print(panel)


@click.command("run")
@handle_exceptions
@click.argument("pipeline", type=click.Path(exists=True, dir_okay=False))
@click.option("--mode", default=None, help="Effective mode used by step mode filters")
@click.option("--fast", is_flag=True, help="Apply fast-mode downgrades to audit/optimize")
@click.option("--dev", is_flag=True, help="Dev mode: implies --fast and mode 'dev'")
@click.option("--only", multiple=True, help="Run only these tasks (repeatable or comma-separated)")
@click.option("--skip", multiple=True, help="Skip these tasks (repeatable or comma-separated)")
@click.option("--profile", is_flag=True, help="Write the pipeline profile JSON")
@click.option("--no-cache", is_flag=True, help="Ignore the step cache for this run")
@click.option("--json", "as_json", is_flag=True, help="Print the pipeline result as JSON")
@click.option("--quiet", is_flag=True, help="Minimal output")
@click.option("--engines", default=None, help="Engine factory as module:callable")
@click.option("--log-dir", default=None, type=click.Path(file_okay=False), help="Also log to a rotating file here")
def run(pipeline, mode, fast, dev, only, skip, profile, no_cache, as_json, quiet, engines, log_dir):
    """Run every step of a pipeline document in order.

    The document is JSON (comments and trailing commas allowed) or YAML.
    Steps run sequentially; the run stops at the first failed step unless
    that step sets continueOnError.

    \b
    EXAMPLES:
      sitepipe run pipeline.json
      sitepipe run pipeline.json --dev --only build,audit
      sitepipe run pipeline.yml --engines mysite.engines:create --json

    \b
    Exit Codes:
      0 = All steps succeeded
      1 = A step failed
      2 = Pipeline configuration is invalid
      3 = Pipeline aborted before all steps ran
    """
    from sitepipe.pipeline.loader import load_pipeline
    from sitepipe.pipeline.renderer import RichRenderer
    from sitepipe.pipeline.runner import RunOptions, run_pipeline
    from sitepipe.pipeline.structures import TaskRuntime

    if log_dir:
        log_file = configure_file_logging(Path(log_dir))
        logger.debug("File logging enabled at {path}", path=log_file)

    try:
        document = load_pipeline(pipeline)
        config = load_runtime_config(document.base_dir)
        runtime = TaskRuntime(
            environ=dict(os.environ),
            config=config,
            collaborators=load_collaborators(engines or config["engines"]["factory"]),
        )
    except ConfigurationError as e:
        print_error(str(e))
        sys.exit(ExitCodes.CONFIG_ERROR)

    options = RunOptions(
        mode=mode,
        fast=fast,
        dev=dev,
        only=_task_filter(only),
        skip=_task_filter(skip),
        profile=profile,
        no_cache=no_cache,
    )

    if as_json:
        try:
            result = run_pipeline(document, runtime, options, ConsoleLogger(quiet=True))
        except ConfigurationError as e:
            print_error(str(e))
            sys.exit(ExitCodes.CONFIG_ERROR)
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(exit_code_for(result))

    renderer = RichRenderer(quiet=quiet)
    renderer.start()
    try:
        result = run_pipeline(document, runtime, options, renderer)
    except ConfigurationError as e:
        renderer.stop()
        print_error(str(e))
        sys.exit(ExitCodes.CONFIG_ERROR)
    except KeyboardInterrupt:
        renderer.stop()
        console.print("\n[bold red][INFO] Pipeline stopped by user.[/bold red]")
        sys.exit(130)
    finally:
        renderer.stop()

    code = exit_code_for(result)
    if not quiet:
        console.print()
        print_pipeline_complete_panel(result)
    if result.aborted:
        print_warning("Run stopped at a failed step; later steps were not executed")
    if ExitCodes.should_fail_pipeline(code):
        failed = next(step for step in result.steps if not step.success)
        print_status_panel(
            "FAILED",
            f"{failed.label}: {failed.message}",
            ExitCodes.get_description(code),
            level="error",
        )
    elif not quiet:
        print_success(f"{len(result.steps)} step(s) finished")
    sys.exit(code)
