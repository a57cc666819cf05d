"""Rich console setup and render progress helpers."""

from __future__ import annotations

import logging
from typing import Protocol

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console()

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(*, verbose: bool = False, quiet: bool = False, level: str = "info") -> None:
    """Configure root logger with Rich handler.

    *verbose* and *quiet* override the named *level*.
    """
    if verbose:
        resolved = logging.DEBUG
    elif quiet:
        resolved = logging.ERROR
    else:
        resolved = _LEVELS.get(level.lower(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


logger = logging.getLogger("tikz_renderer")


# ---------------------------------------------------------------------------
# Render callbacks protocol
# ---------------------------------------------------------------------------


class RenderCallbacks(Protocol):
    """Protocol for progressive render progress reporting."""

    def on_attempt_start(self, attempt: int, strategy: str) -> None: ...
    def on_attempt_skipped(self, attempt: int, strategy: str, reason: str) -> None: ...
    def on_attempt_failed(self, attempt: int, strategy: str, message: str) -> None: ...
    def on_success(self, attempt: int, strategy: str) -> None: ...


class RichCallbacks:
    """Rich-based implementation of RenderCallbacks."""

    def on_attempt_start(self, attempt: int, strategy: str) -> None:
        console.print(f"  [yellow]Attempt {attempt}[/]: {strategy}")

    def on_attempt_skipped(self, attempt: int, strategy: str, reason: str) -> None:
        console.print(f"  [dim]Skipped attempt {attempt} ({strategy}):[/] {reason}")

    def on_attempt_failed(self, attempt: int, strategy: str, message: str) -> None:
        console.print(f"  [red]Attempt {attempt} failed:[/] {message}")

    def on_success(self, attempt: int, strategy: str) -> None:
        console.print(f"  [green]Rendered[/] on attempt {attempt} ({strategy})")


def availability_table(engines: dict[str, bool], converters: dict[str, bool]) -> Table:
    """Rich table of installed engines and converters."""
    table = Table(title="TikZ renderer tools")
    table.add_column("Kind")
    table.add_column("Tool")
    table.add_column("Available")
    for kind, tools in (("engine", engines), ("converter", converters)):
        for name, ok in tools.items():
            table.add_row(kind, name, "[green]yes[/]" if ok else "[red]no[/]")
    return table
