"""Data contracts for pipeline execution."""
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sitepipe.engines import Collaborators


class TaskStatus(Enum):
    """Status of a pipeline step."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CACHED = "cached"


@dataclass(frozen=True)
class PipelineStep:
    """One parsed step: discriminator, display label and option bag.

    ``index`` is 1-based; ``depends_on`` holds indices of earlier steps.
    """
    task: str
    index: int
    step_id: str
    label: str
    options: dict[str, Any]
    depends_on: tuple[int, ...] = ()


@dataclass(frozen=True)
class BuildOutput:
    """What a build-like step produced, used to scope later steps."""
    output_path: str
    updated_files: tuple[str, ...] = ()


@dataclass(frozen=True)
class StepResult:
    """Outcome of a single step."""
    label: str
    task: str
    success: bool
    message: str
    duration_ms: float = 0.0
    cached: bool = False
    step_id: str = ""
    build_output: BuildOutput | None = None

    @property
    def status(self) -> TaskStatus:
        if not self.success:
            return TaskStatus.FAILED
        return TaskStatus.CACHED if self.cached else TaskStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON shape consumed by CI tooling."""
        data: dict[str, Any] = {
            "label": self.label,
            "task": self.task,
            "success": self.success,
            "message": self.message,
            "durationMs": round(self.duration_ms, 1),
        }
        if self.cached:
            data["cached"] = True
        return data


@dataclass
class PipelineResult:
    """Folded results of one run, in execution order."""
    steps: list[StepResult] = field(default_factory=list)
    step_count: int = 0
    duration_ms: float = 0.0
    cache_path: str | None = None
    profile_path: str | None = None
    aborted: bool = False

    @property
    def success(self) -> bool:
        """True when every recorded step succeeded."""
        return all(step.success for step in self.steps)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stepCount": self.step_count,
            "success": self.success,
            "durationMs": round(self.duration_ms, 1),
            "steps": [step.to_dict() for step in self.steps],
        }
        if self.cache_path:
            data["cachePath"] = self.cache_path
        if self.profile_path:
            data["profilePath"] = self.profile_path
        return data


@dataclass(frozen=True)
class ExecutionContext:
    """Per-run state handed to every handler.

    Only the runner creates new contexts, via ``with_build`` after a step
    returns a ``BuildOutput``.
    """
    base_dir: Path
    fast: bool = False
    effective_mode: str = "default"
    last_build_output_path: str | None = None
    last_build_updated_files: tuple[str, ...] = ()

    def with_build(self, output: BuildOutput) -> "ExecutionContext":
        return replace(
            self,
            last_build_output_path=output.output_path,
            last_build_updated_files=tuple(output.updated_files),
        )


@dataclass
class TaskRuntime:
    """Ambient services injected once per run by the orchestrator."""
    environ: dict[str, str]
    config: dict[str, Any]
    collaborators: "Collaborators"

    def timeout(self, name: str) -> int:
        return int(self.config["timeouts"][name])

    def limit(self, name: str) -> int:
        return int(self.config["limits"][name])

    def path(self, name: str) -> str:
        return str(self.config["paths"][name])
