"""Pipeline execution infrastructure."""
from .structures import BuildOutput, ExecutionContext, PipelineResult, PipelineStep, StepResult, TaskRuntime, TaskStatus
from .renderer import RichRenderer
from .ui import console, print_header, print_error, print_warning, print_success, print_status_panel

__all__ = [
    "BuildOutput", "ExecutionContext", "PipelineResult", "PipelineStep", "StepResult", "TaskRuntime", "TaskStatus",
    "RichRenderer",
    "console", "print_header", "print_error", "print_warning", "print_success", "print_status_panel",
]
