"""Event system for pipeline observers.

Decouples step execution from presentation. Observers handle their own
exceptions; the runner never guards observer calls.
"""

import sys
from typing import Protocol


class PipelineObserver(Protocol):
    """Observer interface for pipeline events."""

    def on_pipeline_start(self, path: str, total: int) -> None:
        """Called once after the document is loaded."""
        ...

    def on_step_start(self, label: str, index: int, total: int) -> None:
        """Called when a step begins."""
        ...

    def on_step_complete(self, label: str, message: str, elapsed: float, cached: bool = False) -> None:
        """Called when a step succeeds or is served from the cache."""
        ...

    def on_step_failed(self, label: str, error: str, tolerated: bool = False) -> None:
        """Called when a step fails; ``tolerated`` means the run continues."""
        ...

    def on_step_skipped(self, label: str, reason: str) -> None:
        """Called for steps filtered out by mode or task filters."""
        ...

    def on_log(self, message: str, is_error: bool = False) -> None:
        """Called for generic log messages."""
        ...


class ConsoleLogger:
    """ASCII-safe console logger (Windows CP1252 compatible).

    This is the DEFAULT observer.
    """

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def on_pipeline_start(self, path: str, total: int) -> None:
        if not self.quiet:
            print(f"[PIPELINE] {path} ({total} steps)", flush=True)

    def on_step_start(self, label: str, index: int, total: int) -> None:
        if not self.quiet:
            print(f"Starting {label}...", flush=True)

    def on_step_complete(self, label: str, message: str, elapsed: float, cached: bool = False) -> None:
        if not self.quiet:
            tag = "[CACHED]" if cached else "[OK]"
            print(f"{tag} {label}: {message}", flush=True)

    def on_step_failed(self, label: str, error: str, tolerated: bool = False) -> None:
        # Errors print even in quiet mode
        tag = "[ALLOWED]" if tolerated else "[FAILED]"
        display_err = error.strip()[:200]
        if len(error.strip()) > 200:
            display_err += "..."
        print(f"{tag} {label}: {display_err}", file=sys.stderr, flush=True)

    def on_step_skipped(self, label: str, reason: str) -> None:
        if not self.quiet:
            print(f"[SKIP] {label} ({reason})", flush=True)

    def on_log(self, message: str, is_error: bool = False) -> None:
        if not self.quiet or is_error:
            msg = str(message) if message is not None else ""
            print(msg, file=sys.stderr if is_error else sys.stdout, flush=True)
