"""Shared Rich console and message helpers for sitepipe commands.

Commands and the renderer print through ``console`` so every line uses the
same step-status styles (``ok``, ``cached``, ``skipped``, ``allowed``...).
"""

import sys

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

SITEPIPE_THEME = Theme({
    "info": "bold cyan",
    "warning": "bold yellow",
    "error": "bold red",
    "success": "bold green",
    "cached": "bold blue",
    "skipped": "dim white",
    "task": "bold magenta",
    "path": "bold cyan",
    "dim": "dim white",
})

# Panel level -> (heading style, border colour)
PANEL_LEVELS = {
    "error": ("bold red", "red"),
    "warning": ("bold yellow", "yellow"),
    "success": ("bold green", "green"),
    "info": ("bold cyan", "cyan"),
}

console = Console(theme=SITEPIPE_THEME, force_terminal=sys.stdout.isatty())


def _tagged(style: str, tag: str, msg: str) -> None:
    # Messages often carry paths or option names with brackets
    console.print(f"[{style}]{tag}:[/{style}] {escape(msg)}")


def print_header(title: str) -> None:
    console.rule(f"[bold]{title}[/bold]")


def print_error(msg: str) -> None:
    _tagged("error", "ERROR", msg)


def print_warning(msg: str) -> None:
    _tagged("warning", "WARNING", msg)


def print_success(msg: str) -> None:
    _tagged("success", "OK", msg)


def print_status_panel(status: str, message: str, detail: str, level: str = "info") -> None:
    """Boxed run verdict: ``status`` as the heading, then the failing step and a detail line.

    Unknown levels render in plain white.
    """
    heading_style, border = PANEL_LEVELS.get(level, ("white", "white"))
    body = Text.assemble(
        (f"STATUS: [{status}]\n", heading_style),
        (f"{message}\n", border),
        (detail, border),
    )
    console.print(Panel(body, border_style=border, expand=False))
