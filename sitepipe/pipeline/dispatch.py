"""Task discriminator to handler table."""

from typing import Callable

from sitepipe.tasks.artifacts import run_github_artifacts_prune
from sitepipe.tasks.audit import run_audit
from sitepipe.tasks.command import run_exec
from sitepipe.tasks.content import CONTENT_TASKS, run_content_task
from sitepipe.tasks.data_transform import run_data_transform
from sitepipe.tasks.doctor import run_doctor
from sitepipe.tasks.dotnet import run_dotnet_build, run_dotnet_publish
from sitepipe.tasks.files import run_overlay, run_sitemap
from sitepipe.tasks.git_sync import run_git_sync
from sitepipe.tasks.hook import run_hook
from sitepipe.tasks.html_transform import run_html_transform
from sitepipe.tasks.optimize import run_optimize
from sitepipe.tasks.site import run_build, run_markdown_fix, run_verify

from .structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime

Handler = Callable[[PipelineStep, ExecutionContext, TaskRuntime], StepResult]

TASK_HANDLERS: dict[str, Handler] = {
    "build": run_build,
    "verify": run_verify,
    "markdown-fix": run_markdown_fix,
    "sitemap": run_sitemap,
    "optimize": run_optimize,
    "audit": run_audit,
    "doctor": run_doctor,
    "dotnet-build": run_dotnet_build,
    "dotnet-publish": run_dotnet_publish,
    "overlay": run_overlay,
    "hook": run_hook,
    "html-transform": run_html_transform,
    "data-transform": run_data_transform,
    "exec": run_exec,
    "git-sync": run_git_sync,
    "github-artifacts-prune": run_github_artifacts_prune,
    **{task: run_content_task for task in CONTENT_TASKS},
}

# engine kind each task needs; anything absent runs in-repo
TASK_COLLABORATORS: dict[str, str] = {
    "build": "builder",
    "verify": "builder",
    "doctor": "builder+auditor",
    "audit": "auditor",
    "optimize": "optimizer",
    "github-artifacts-prune": "pruner",
    "markdown-fix": "content",
    **{task: "content" for task in CONTENT_TASKS},
}


def dispatch(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    """Run the handler for ``step.task``.

    Unknown tasks yield a failed result rather than raising; handler
    exceptions propagate to the runner.
    """
    handler = TASK_HANDLERS.get(step.task)
    if handler is None:
        return StepResult(
            label=step.label,
            task=step.task,
            success=False,
            message="Unknown task",
            step_id=step.step_id,
        )
    return handler(step, context, runtime)
