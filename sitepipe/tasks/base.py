"""Helpers shared by task handlers."""

import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sitepipe.pipeline.options import StepOptions, resolve_path
from sitepipe.pipeline.structures import BuildOutput, ExecutionContext, PipelineStep, StepResult

WORKDIR_KEYS = ("workingDirectory", "workingDir", "cwd")
COMMAND_KEYS = ("command", "cmd", "file")
ENV_KEYS = ("env", "environment")


def succeeded(step: PipelineStep, message: str, build_output: BuildOutput | None = None) -> StepResult:
    return StepResult(
        label=step.label,
        task=step.task,
        success=True,
        message=message,
        step_id=step.step_id,
        build_output=build_output,
    )


def failed(step: PipelineStep, message: str) -> StepResult:
    return StepResult(label=step.label, task=step.task, success=False, message=message, step_id=step.step_id)


def allows_failure(options: StepOptions) -> bool:
    return bool(options.boolean("allowFailure", "continueOnError", default=False))


def working_directory(options: StepOptions, context: ExecutionContext, default: str | None = None) -> str:
    base = str(context.base_dir)
    value = options.string(*WORKDIR_KEYS)
    if value is None:
        return default or os.path.abspath(base)
    return resolve_path(base, value) or base


def clean_directory(path: str) -> None:
    """Empty ``path`` without removing the directory itself."""
    if not os.path.isdir(path):
        return
    for entry in os.scandir(path):
        if entry.is_dir(follow_symlinks=False):
            shutil.rmtree(entry.path)
        else:
            os.remove(entry.path)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_json(path: str | Path, payload: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def write_text(path: str | Path, content: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")


def read_text_or_none(path: str | Path) -> str | None:
    """File text with undecodable bytes replaced, or None when there is no file."""
    target = Path(path)
    return target.read_text(encoding="utf-8", errors="replace") if target.is_file() else None
