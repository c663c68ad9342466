"""Rich-based pipeline renderer with a live step table."""
import sys
import time

from rich.console import Console, ConsoleOptions, RenderResult
from rich.live import Live
from rich.table import Table
from rich.text import Text

from sitepipe.events import PipelineObserver
from sitepipe.utils.logging import restore_stderr_sink, swap_to_rich_sink

from .ui import SITEPIPE_THEME


class DynamicTable:
    """Wrapper that builds a fresh table on each Rich render cycle.

    Rich calls __rich_console__ on each refresh (4x/second), so running
    steps show a ticking timer.
    """

    def __init__(self, renderer: "RichRenderer"):
        self.renderer = renderer

    def __rich_console__(self, console: Console, options: ConsoleOptions) -> RenderResult:
        yield self.renderer._build_live_table()


class RichRenderer(PipelineObserver):
    """Live step table in a TTY; plain line output everywhere else."""

    MAX_ERROR_CHARS = 200

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self.is_tty = sys.stdout.isatty()
        # Own console for Live display, but shared theme for consistency
        self.console = Console(theme=SITEPIPE_THEME, force_terminal=self.is_tty)

        self._steps: dict[str, dict] = {}
        self._title = "Pipeline Progress"

        self._live: Live | None = None
        self._log_handler: int | None = None

    def _build_live_table(self) -> Table:
        """Build fresh table with current elapsed times (called on each refresh)."""
        table = Table(title=self._title, expand=True)
        table.add_column("Step", style="cyan", no_wrap=True)
        table.add_column("Status", width=10)
        table.add_column("Time", justify="right", width=8)
        table.add_column("Message", overflow="ellipsis", no_wrap=True)

        now = time.time()
        for label, info in self._steps.items():
            status = info.get("status", "pending")
            if status == "running":
                time_str = f"{now - info.get('start_time', now):.1f}s"
            elif info.get("elapsed", 0) > 0:
                time_str = f"{info['elapsed']:.1f}s"
            else:
                time_str = "-"
            table.add_row(
                Text(label),
                Text(status, style=_STATUS_STYLES.get(status, "dim")),
                time_str,
                Text(info.get("message", "")),
            )

        return table

    def _write(self, text: str, is_error: bool = False):
        """Central output handler."""
        if self.quiet and not is_error:
            return
        if self._live:
            # Print ABOVE the table so it stays pinned at the bottom
            style = "bold red" if is_error else None
            self._live.console.print(text, style=style, markup=False)
        else:
            print(text, file=sys.stderr if is_error else sys.stdout, flush=True)

    def _log_sink(self, message) -> None:
        if self._live:
            self._live.console.print(Text.from_ansi(str(message).rstrip("\n")))
        else:
            sys.stderr.write(str(message))

    def start(self):
        """Start the live display (call before the pipeline runs)."""
        if self.is_tty and not self.quiet:
            self._live = Live(DynamicTable(self), refresh_per_second=4, console=self.console)
            self._live.__enter__()
            self._log_handler = swap_to_rich_sink(self._log_sink)

    def stop(self):
        """Stop the live display (call after the pipeline completes)."""
        if self._live:
            self._live.__exit__(None, None, None)
            self._live = None
            restore_stderr_sink(self._log_handler)
            self._log_handler = None

    # PipelineObserver implementation

    def on_pipeline_start(self, path: str, total: int) -> None:
        self._title = f"{path} ({total} steps)"
        if not self._live:
            self._write(f"[PIPELINE] {path} ({total} steps)")

    def on_step_start(self, label: str, index: int, total: int) -> None:
        self._steps[label] = {"status": "running", "start_time": time.time()}
        if not self._live:
            self._write(f"Starting {label}...")

    def on_step_complete(self, label: str, message: str, elapsed: float, cached: bool = False) -> None:
        status = "cached" if cached else "ok"
        self._steps[label] = {"status": status, "elapsed": elapsed, "message": message}
        if not self._live:
            self._write(f"[{status.upper()}] {label}: {message}")

    def on_step_failed(self, label: str, error: str, tolerated: bool = False) -> None:
        status = "allowed" if tolerated else "FAILED"
        previous = self._steps.get(label, {})
        elapsed = time.time() - previous["start_time"] if "start_time" in previous else 0
        self._steps[label] = {"status": status, "elapsed": elapsed, "message": error}
        truncated = error[:self.MAX_ERROR_CHARS] + "..." if len(error) > self.MAX_ERROR_CHARS else error
        self._write(f"[{status.upper()}] {label}: {truncated}", is_error=True)

    def on_step_skipped(self, label: str, reason: str) -> None:
        self._steps[label] = {"status": "skipped", "message": reason}
        if not self._live:
            self._write(f"[SKIP] {label} ({reason})")

    def on_log(self, message: str, is_error: bool = False) -> None:
        self._write(str(message) if message else "", is_error=is_error)


_STATUS_STYLES = {
    "running": "info",
    "ok": "success",
    "cached": "cached",
    "skipped": "skipped",
    "allowed": "warning",
    "FAILED": "error",
}
