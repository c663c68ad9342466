"""Pytest configuration and fixtures."""
import copy
import json
import os
import sys
from pathlib import Path

import pytest

from sitepipe.config_runtime import DEFAULTS
from sitepipe.engines import (
    AuditReport,
    BuildReport,
    Collaborators,
    EngineReport,
    OptimizeReport,
    PruneReport,
    VerifyReport,
)
from sitepipe.pipeline.policy import CI_ENV_VARS
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, TaskRuntime


def make_step(task: str, index: int = 1, total: int = 1, **options) -> PipelineStep:
    """A parsed step the way the loader would produce it."""
    return PipelineStep(
        task=task,
        index=index,
        step_id=f"{task}-{index}",
        label=f"[{index}/{total}] {task}",
        options={"task": task, **options},
    )


def python_command(code: str) -> dict:
    """Step options that run ``code`` with the current interpreter."""
    return {"command": sys.executable, "argsList": ["-c", code]}


def write_pipeline(path: Path, steps: list[dict], **document) -> Path:
    path.write_text(json.dumps({**document, "steps": steps}), encoding="utf-8")
    return path


class FakeBuilder:
    """Writes the pages it was told to and reports them as updated."""

    def __init__(self, pages: dict[str, str] | None = None, verify_report: VerifyReport | None = None):
        self.pages = pages if pages is not None else {"index.html": "<h1>home</h1>", "site.css": "body{}"}
        self.verify_report = verify_report or VerifyReport()
        self.build_requests = []
        self.verify_requests = []

    def build(self, request):
        self.build_requests.append(request)
        os.makedirs(request.out, exist_ok=True)
        updated = []
        for relative, content in self.pages.items():
            target = os.path.join(request.out, relative)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "w", encoding="utf-8") as f:
                f.write(content)
            updated.append(os.path.abspath(target))
        return BuildReport(output_path=os.path.abspath(request.out), updated_files=updated)

    def verify(self, request):
        self.verify_requests.append(request)
        return self.verify_report


class FakeAuditor:
    def __init__(self, report: AuditReport | None = None):
        self.report = report or AuditReport(page_count=2, link_count=5, asset_count=1)
        self.requests = []

    def audit(self, request):
        self.requests.append(request)
        if request.summary_path and (not request.summary_on_fail or not self.report.success):
            Path(request.summary_path).parent.mkdir(parents=True, exist_ok=True)
            Path(request.summary_path).write_text(json.dumps({"success": self.report.success}), encoding="utf-8")
        return self.report


class FakeOptimizer:
    def __init__(self, report: OptimizeReport | None = None):
        self.report = report or OptimizeReport(updated_count=1)
        self.requests = []

    def optimize(self, request):
        self.requests.append(request)
        return self.report


class FakePruner:
    def __init__(self, report: PruneReport | None = None, error: Exception | None = None):
        self.report = report or PruneReport(repository="acme/site", scanned_artifacts=4, matched_artifacts=2, planned_deletes=1)
        self.error = error
        self.requests = []

    def prune(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.report


class FakeContent:
    def __init__(self, report: EngineReport | None = None):
        self.report = report or EngineReport(summary="done")
        self.requests = []

    def run(self, request):
        self.requests.append(request)
        return self.report


@pytest.fixture
def clean_environ():
    """Process environment without CI markers."""
    return {key: value for key, value in os.environ.items() if key not in CI_ENV_VARS}


@pytest.fixture
def engines():
    return Collaborators(
        builder=FakeBuilder(),
        auditor=FakeAuditor(),
        optimizer=FakeOptimizer(),
        pruner=FakePruner(),
        content=FakeContent(),
    )


@pytest.fixture
def runtime(clean_environ, engines):
    return TaskRuntime(environ=clean_environ, config=copy.deepcopy(DEFAULTS), collaborators=engines)


@pytest.fixture
def context(tmp_path):
    return ExecutionContext(base_dir=tmp_path)


@pytest.fixture
def site_root(tmp_path):
    """A small generated site under ``_site``."""
    root = tmp_path / "_site"
    (root / "docs").mkdir(parents=True)
    (root / "index.html").write_text("<h1>home</h1>", encoding="utf-8")
    (root / "docs" / "index.html").write_text("<h1>docs</h1>", encoding="utf-8")
    (root / "docs" / "intro.html").write_text("<h1>intro</h1>", encoding="utf-8")
    (root / "site.css").write_text("body{}", encoding="utf-8")
    return root
