"""Exception hierarchy for engine resolution, builds and workspace I/O."""

from __future__ import annotations


class PaperxError(RuntimeError):
    """Base exception for paperx failures surfaced to the CLI."""


class ConfigError(PaperxError):
    """Raised when ``paperx.yaml`` is missing or invalid."""


class WorkspaceError(PaperxError):
    """Raised when scaffolding or editing workspace files is refused."""


# ---------------------------------------------------------------------------
# Engine resolution (fatal, raised before any subprocess is spawned)
# ---------------------------------------------------------------------------


class EngineResolutionError(PaperxError):
    """Base class for resolver failures."""


class EngineNotFound(EngineResolutionError):
    """Raised when an explicitly requested engine is unknown or not installed."""

    def __init__(self, name: str, candidates: tuple[str, ...] = ()) -> None:
        self.name = name
        self.candidates = candidates
        if candidates:
            detail = f"none of {', '.join(candidates)} found on PATH"
        else:
            detail = "unknown engine"
        super().__init__(f"Engine '{name}' not available ({detail})")


class NoEngineAvailable(EngineResolutionError):
    """Raised when no engine of the preference list is installed."""

    def __init__(self, probed: tuple[str, ...]) -> None:
        self.probed = probed
        super().__init__(
            f"No TeX engine found (tried {', '.join(probed)}). "
            "Please install tectonic or TeX Live."
        )


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


class CompileError(PaperxError):
    """Compilation failure carried inside a failed ``BuildResult``."""

    def __init__(self, message: str, *, log_excerpt: str = "", passes_run: int = 0) -> None:
        self.log_excerpt = log_excerpt
        self.passes_run = passes_run
        super().__init__(message)


class EngineLaunchError(PaperxError):
    """Raised when an engine or bibliography tool cannot be started."""


class BusyError(PaperxError):
    """Raised when a build or clean is attempted while a build is in flight."""


class ArtifactIOError(PaperxError):
    """Raised when the output directory cannot be manipulated."""


class WatchSubscriptionError(PaperxError):
    """Raised when the filesystem watch cannot be established."""
