"""Exceptions raised by the pipeline engine and its task handlers.

Handlers raise these instead of returning failed results; the runner records
the failed step with ``str(exc)`` as its message and decides whether to abort.
"""

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ConfigurationError(PipelineError):
    """A pipeline document or step option is missing or invalid."""


class PreconditionError(PipelineError):
    """An environment precondition (directory, input file) does not hold."""


class ProcessStartError(PipelineError):
    """An external program could not be spawned."""


class ProcessFailedError(PipelineError):
    """An external program exited nonzero and the step did not tolerate it."""

    def __init__(self, message: str, exit_code: int, preview: str = ""):
        super().__init__(message, {"exit_code": exit_code, "preview": preview})
        self.exit_code = exit_code
        self.preview = preview


class StepTimeoutError(PipelineError):
    """An external program exceeded its timeout. Never tolerated."""

    def __init__(self, message: str, timeout_seconds: int):
        super().__init__(message, {"timeout_seconds": timeout_seconds})
        self.timeout_seconds = timeout_seconds


class TaskFailedError(PipelineError):
    """A collaborator reported failure for the work it was given."""


class DependencyError(PipelineError):
    """A step dependency failed or never ran."""


class CollaboratorMissingError(ConfigurationError):
    """No engine is registered for a task that needs one."""
