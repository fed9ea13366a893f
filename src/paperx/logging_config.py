"""Rich console setup and build progress reporting."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from rich.console import Console
from rich.logging import RichHandler

from .tools.compiler import format_build_errors

if TYPE_CHECKING:
    from .models import BuildRequest, BuildResult, ResolvedEngine

console = Console()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logger with Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # watchdog's inotify/fsevents internals are chatty at DEBUG.
    logging.getLogger("watchdog").setLevel(max(level, logging.INFO))


# ---------------------------------------------------------------------------
# Build callbacks protocol
# ---------------------------------------------------------------------------


class BuildCallbacks(Protocol):
    """Protocol for build and watch progress reporting."""

    def on_engine_resolved(self, engine: ResolvedEngine) -> None: ...
    def on_build_start(self, request: BuildRequest) -> None: ...
    def on_pass(self, pass_num: int, max_passes: int, engine: str) -> None: ...
    def on_bibliography(self, tool: str) -> None: ...
    def on_build_end(self, result: BuildResult) -> None: ...
    def on_watch_start(self, paths: Sequence[Path], debounce_ms: int) -> None: ...
    def on_change(self, path: str) -> None: ...
    def on_rebuild_pending(self) -> None: ...
    def on_warning(self, message: str) -> None: ...


class RichCallbacks:
    """Rich-based implementation of BuildCallbacks."""

    def __init__(self, *, show_passes: bool = True) -> None:
        self.show_passes = show_passes

    def on_engine_resolved(self, engine: ResolvedEngine) -> None:
        console.print(f"Using engine: [bold]{engine.name}[/] [dim]({engine.executable})[/]")

    def on_build_start(self, request: BuildRequest) -> None:
        if request.reason != "build":
            console.rule(f"[bold blue]Rebuild[/]: {request.reason}")

    def on_pass(self, pass_num: int, max_passes: int, engine: str) -> None:
        if self.show_passes:
            console.print(f"  [yellow]{engine} pass {pass_num}/{max_passes}[/]")

    def on_bibliography(self, tool: str) -> None:
        console.print(f"  [cyan]Running {tool}…[/]")

    def on_build_end(self, result: BuildResult) -> None:
        if result.success:
            console.print(
                f"[green]Build succeeded[/] in {result.duration_ms} ms "
                f"({result.passes_run} pass{'es' if result.passes_run != 1 else ''}): {result.artifact_path}"
            )
            if result.unresolved_refs:
                console.print(f"  [yellow]Unresolved:[/] {', '.join(result.unresolved_refs)}")
        else:
            kind = result.error_kind.value if result.error_kind else "error"
            console.print(f"[red]Build failed[/] ({kind}) after {result.passes_run} pass(es)")
            console.print(format_build_errors(result), markup=False, highlight=False)

    def on_watch_start(self, paths: Sequence[Path], debounce_ms: int) -> None:
        names = ", ".join(f"{p.name}/" for p in paths)
        console.print(f"Watching {names} (debounce {debounce_ms} ms), press Ctrl+C to stop.")

    def on_change(self, path: str) -> None:
        console.print(f"[dim]Change detected:[/] {path}")

    def on_rebuild_pending(self) -> None:
        console.print("  [dim]Changes during build, one more rebuild queued[/]")

    def on_warning(self, message: str) -> None:
        console.print(f"  [yellow]WARNING:[/] {message}")

