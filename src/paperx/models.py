"""Pydantic models for workspace configuration, engines and builds."""

from __future__ import annotations

import itertools
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ErrorKind(str, Enum):
    COMPILE_ERROR = "compile_error"
    UNSTABLE_REFERENCES = "unstable_references"
    BIBLIOGRAPHY_ERROR = "bibliography_error"
    TIMEOUT = "timeout"
    MISSING_SOURCE = "missing_source"
    MISSING_ARTIFACT = "missing_artifact"


# ---------------------------------------------------------------------------
# Workspace configuration (loaded from paperx.yaml)
# ---------------------------------------------------------------------------

class WorkspaceConfig(BaseModel):
    """Workspace configuration loaded once per invocation from ``paperx.yaml``.

    Paper metadata is opaque to the build core.  Keys this model does not
    know about are kept as extras and written back untouched.
    """
    model_config = ConfigDict(frozen=True, extra="allow")

    main_tex: str = Field(default="tex/main.tex", description="Main document, relative to the workspace")
    engine: str | None = Field(default=None, description="Preferred engine, tried first in the fallback order")
    output_dir: str = Field(default="build", description="Build output directory")

    # Build settings
    max_passes: int = Field(default=5, ge=1, description="Max engine passes before references count as unstable")
    debounce_ms: int = Field(default=400, ge=0, description="Quiet period before a watch rebuild fires")
    timeout: int = Field(default=120, gt=0, description="Per-subprocess timeout in seconds")
    watch_dirs: tuple[str, ...] = Field(
        default=("tex", "bib", "figures"),
        description="Directories watched for changes, relative to the workspace",
    )

    # Paper metadata
    title: str = Field(default="Untitled Paper")
    author: str = Field(default="First Last")
    affiliation: str = Field(default="Affiliation")
    keywords: str = Field(default="keyword1, keyword2")
    abstract_text: str = Field(default="This is the abstract.")


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

class EngineSpec(BaseModel):
    """Static description of one typesetting engine."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Engine name used on the command line and in paperx.yaml")
    executable_candidates: tuple[str, ...] = Field(..., description="Executable names probed in order")
    arguments: tuple[str, ...] = Field(
        default=(),
        description="Argument template; {main} and {outdir} are substituted per build",
    )
    supports_bibliography: bool = Field(default=False, description="Pipeline interleaves bibtex/biber")
    requires_multi_pass: bool = Field(default=False, description="Pipeline re-runs until references settle")


class ResolvedEngine(BaseModel):
    """An engine spec paired with the executable found on this system."""
    model_config = ConfigDict(frozen=True)

    spec: EngineSpec
    executable: str = Field(..., description="Absolute path (or name) of the probed executable")

    @property
    def name(self) -> str:
        return self.spec.name


# ---------------------------------------------------------------------------
# Builds
# ---------------------------------------------------------------------------

class BuildRequest(BaseModel):
    """One build attempt.  Never reused: every rebuild gets a new request."""
    model_config = ConfigDict(frozen=True)

    request_id: int = Field(..., ge=1, description="Issued by the BuildContext that created the request")
    workspace_root: Path
    main_document: Path = Field(..., description="Absolute path of the main .tex file")
    output_dir: Path = Field(..., description="Absolute build output directory")
    engine: ResolvedEngine
    reason: str = Field(default="build", description="Why the build was requested (build, change, pending)")

    @property
    def job_name(self) -> str:
        return self.main_document.stem

    @property
    def artifact_path(self) -> Path:
        return self.output_dir / f"{self.job_name}.pdf"

    @property
    def log_path(self) -> Path:
        return self.output_dir / f"{self.job_name}.log"


class CompilationWarning(BaseModel):
    """A single warning or error from LaTeX compilation."""
    file: str = Field(default="", description="Source file")
    line: int | None = Field(default=None, description="Line number")
    message: str = Field(..., description="Warning/error message")
    severity: Severity = Field(default=Severity.WARNING)
    context: str = Field(default="", description="±5 line window around the error")


class BuildResult(BaseModel):
    """Outcome of one ``BuildPipeline.run()``; answers exactly one request."""
    model_config = ConfigDict(frozen=True)

    request_id: int = Field(..., description="Id of the BuildRequest this result answers")
    success: bool = Field(...)
    passes_run: int = Field(default=0, description="Engine passes executed (bibliography runs excluded)")
    log_excerpt: str = Field(default="", description="Tail of the relevant captured output")
    artifact_path: Path | None = Field(default=None, description="Produced PDF, set on success only")
    duration_ms: int = Field(default=0)
    error_kind: ErrorKind | None = Field(default=None)
    engine: str = Field(default="")
    bibliography_tool: str | None = Field(default=None, description="bibtex/biber when one was run")
    errors: tuple[CompilationWarning, ...] = Field(default=())
    warnings: tuple[CompilationWarning, ...] = Field(default=())
    unresolved_refs: tuple[str, ...] = Field(default=())


class ArtifactRecord(BaseModel):
    """Pointer to the last successful build output."""
    model_config = ConfigDict(frozen=True)

    path: Path
    recorded_at: datetime
    engine: str = Field(default="")
    passes_run: int = Field(default=0)


class WatchSession(BaseModel):
    """Mutable watch-mode state, written only by the Watcher control loop."""
    debounce_window_ms: int = Field(default=400, ge=0)
    pending_rebuild: bool = Field(default=False)
    build_in_flight: bool = Field(default=False)
    last_build_result: BuildResult | None = Field(default=None)
    builds_started: int = Field(default=0)


# ---------------------------------------------------------------------------
# Per-invocation context
# ---------------------------------------------------------------------------

class BuildContext(BaseModel):
    """Everything a build needs, constructed once per CLI invocation."""
    model_config = ConfigDict(frozen=True)

    workspace_root: Path
    config: WorkspaceConfig
    engine: ResolvedEngine
    output_dir: Path = Field(..., description="Absolute output directory (CLI override or config)")

    _request_ids: itertools.count = PrivateAttr(default_factory=lambda: itertools.count(1))

    @property
    def main_document(self) -> Path:
        return (self.workspace_root / self.config.main_tex).resolve()

    def new_request(self, reason: str = "build") -> BuildRequest:
        """Return a fresh request; requests are never shared between builds."""
        return BuildRequest(
            request_id=next(self._request_ids),
            workspace_root=self.workspace_root,
            main_document=self.main_document,
            output_dir=self.output_dir,
            engine=self.engine,
            reason=reason,
        )

    def watch_paths(self) -> list[Path]:
        """Existing watched directories plus the main document's folder.

        Paths nested inside another watched path are dropped, since every
        watch is recursive.
        """
        candidates = [self.workspace_root / d for d in self.config.watch_dirs]
        candidates.append(self.main_document.parent)
        resolved: list[Path] = []
        for path in candidates:
            if not path.is_dir():
                continue
            path = path.resolve()
            if path not in resolved:
                resolved.append(path)
        return [
            path for path in resolved
            if not any(other != path and path.is_relative_to(other) for other in resolved)
        ]

    def summary(self) -> dict[str, Any]:
        return {
            "workspace": str(self.workspace_root),
            "main_tex": self.config.main_tex,
            "engine": self.engine.name,
            "output_dir": str(self.output_dir),
        }
