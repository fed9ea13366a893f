"""BuildPipeline: one full compilation of a workspace.

Pass protocol:

1. engine pass
2. bibtex / biber, once, when the first pass referenced an existing .bib
   and the engine does not run it itself
3. engine passes until the auxiliary state reaches a fixed point, or
   ``max_passes`` is hit ("unstable references")

Self-driving engines (tectonic, latexmk) run exactly one pass.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from .artifacts import ArtifactManager
from .engines import engine_command
from .errors import CompileError, EngineLaunchError
from .logging_config import BuildCallbacks, RichCallbacks
from .models import BuildRequest, BuildResult, ErrorKind
from .tools.compiler import (
    ToolRun,
    aux_state,
    bibliography_env,
    detect_bibliography,
    find_bibliography_tool,
    find_fatal_markers,
    parse_log,
    run_tool,
    tail,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PASSES = 5
UNSTABLE_REFERENCES = "unstable references"


class _PassFailed(CompileError):
    """A pass failed; ``kind`` becomes the result's error kind."""

    def __init__(self, kind: ErrorKind, message: str, run: ToolRun | None = None) -> None:
        self.kind = kind
        self.run = run
        super().__init__(message, log_excerpt=tail(run.output) if run else "")


@dataclass
class _Progress:
    """Counters of the build in progress, kept when a pass fails."""

    passes: int = 0
    bibliography_tool: str | None = None
    last_run: ToolRun | None = None


class BuildPipeline:
    """Compile a ``BuildRequest`` into a ``BuildResult``.

    Compile errors are returned as failed results.  Only a subprocess that
    cannot be launched raises (``EngineLaunchError``), and a second
    concurrent run on the same output directory raises ``BusyError``.
    """

    def __init__(
        self,
        artifacts: ArtifactManager,
        *,
        max_passes: int = DEFAULT_MAX_PASSES,
        timeout: int = 120,
        callbacks: BuildCallbacks | None = None,
    ) -> None:
        if max_passes < 1:
            raise ValueError("max_passes must be at least 1")
        self.artifacts = artifacts
        self.max_passes = max_passes
        self.timeout = timeout
        self.callbacks = callbacks or RichCallbacks()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def run(self, request: BuildRequest) -> BuildResult:
        started = time.monotonic()
        self.callbacks.on_build_start(request)
        with self.artifacts.claim():
            result = self._run_claimed(request, started)
        if result.success:
            self.artifacts.record_success(result)
        self.callbacks.on_build_end(result)
        return result

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _run_claimed(self, request: BuildRequest, started: float) -> BuildResult:
        if not request.main_document.is_file():
            return self._result(
                request, started, _Progress(),
                success=False,
                error_kind=ErrorKind.MISSING_SOURCE,
                log_excerpt=f"Main tex not found: {request.main_document}",
            )

        progress = _Progress()
        try:
            self._run_passes(request, progress)
        except _PassFailed as failure:
            excerpt = str(failure)
            if failure.run is not None:
                # Markers already inside the tail are not repeated.
                markers = [m for m in find_fatal_markers(failure.run.output)[:10] if m not in failure.log_excerpt]
                excerpt = "\n".join([str(failure), *markers, "", failure.log_excerpt]).strip()
            return self._result(
                request, started, progress,
                success=False,
                error_kind=failure.kind,
                log_excerpt=excerpt,
            )

        artifact = request.artifact_path
        if not artifact.is_file():
            output = tail(progress.last_run.output) if progress.last_run else ""
            return self._result(
                request, started, progress,
                success=False,
                error_kind=ErrorKind.MISSING_ARTIFACT,
                log_excerpt=f"No PDF produced at {artifact}\n{output}".strip(),
            )
        return self._result(request, started, progress, success=True, artifact_path=artifact)

    def _run_passes(self, request: BuildRequest, progress: _Progress) -> None:
        spec = request.engine.spec
        source_dir = request.main_document.parent
        max_passes = self.max_passes if spec.requires_multi_pass else 1
        previous_state = None

        while True:
            progress.passes += 1
            self.callbacks.on_pass(progress.passes, max_passes, spec.name)
            progress.last_run = self._engine_pass(request)

            if not spec.requires_multi_pass:
                return

            if progress.passes == 1 and spec.supports_bibliography:
                progress.bibliography_tool = detect_bibliography(
                    request.output_dir, request.job_name, source_dir
                )
                if progress.bibliography_tool:
                    self._bibliography_pass(request, progress.bibliography_tool)

            state = aux_state(request.output_dir, request.job_name)
            if previous_state is not None and state == previous_state:
                logger.info("References stable after %d passes", progress.passes)
                return
            if progress.passes >= max_passes:
                logger.warning("References did not stabilise within %d passes", max_passes)
                raise _PassFailed(ErrorKind.UNSTABLE_REFERENCES, UNSTABLE_REFERENCES, progress.last_run)
            previous_state = state

    def _engine_pass(self, request: BuildRequest) -> ToolRun:
        argv = engine_command(request.engine, request.main_document, request.output_dir)
        try:
            run = run_tool(
                argv,
                cwd=request.main_document.parent,
                timeout=self.timeout,
                label=request.engine.name,
            )
        except subprocess.TimeoutExpired as exc:
            raise _PassFailed(ErrorKind.TIMEOUT, f"{request.engine.name} timed out after {exc.timeout}s") from exc
        self._check(run, ErrorKind.COMPILE_ERROR)
        return run

    def _bibliography_pass(self, request: BuildRequest, tool: str) -> ToolRun:
        executable = find_bibliography_tool(tool)
        if executable is None:
            raise EngineLaunchError(f"{tool} is required by this document but was not found on PATH")
        self.callbacks.on_bibliography(tool)
        try:
            run = run_tool(
                [executable, request.job_name],
                cwd=request.output_dir,
                timeout=self.timeout,
                label=tool,
                env=bibliography_env(request.main_document.parent),
            )
        except subprocess.TimeoutExpired as exc:
            raise _PassFailed(ErrorKind.TIMEOUT, f"{tool} timed out after {exc.timeout}s") from exc
        self._check(run, ErrorKind.BIBLIOGRAPHY_ERROR)
        return run

    @staticmethod
    def _check(run: ToolRun, kind: ErrorKind) -> None:
        """Fail on a non-zero exit *or* any fatal marker in the captured output."""
        markers = find_fatal_markers(run.output)
        if run.returncode != 0:
            raise _PassFailed(kind, f"{run.label} exited with status {run.returncode}", run)
        if markers:
            logger.warning("%s exited 0 but reported errors: %s", run.label, markers[0])
            raise _PassFailed(kind, f"{run.label} reported errors", run)

    def _result(
        self,
        request: BuildRequest,
        started: float,
        progress: _Progress,
        *,
        success: bool,
        error_kind: ErrorKind | None = None,
        log_excerpt: str = "",
        artifact_path: Path | None = None,
    ) -> BuildResult:
        passes_run = progress.passes
        errors, warnings, unresolved = parse_log(
            request.log_path,
            source_dir=request.main_document.parent,
            main_file=request.main_document.name,
        ) if passes_run else ([], [], [])
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "%s build finished: success=%s, passes=%d, errors=%d, duration=%dms",
            request.engine.name, success, passes_run, len(errors), duration_ms,
        )
        return BuildResult(
            request_id=request.request_id,
            success=success,
            passes_run=passes_run,
            log_excerpt=log_excerpt,
            artifact_path=artifact_path if success else None,
            duration_ms=duration_ms,
            error_kind=None if success else error_kind,
            engine=request.engine.name,
            bibliography_tool=progress.bibliography_tool,
            errors=tuple(errors) if not success else (),
            warnings=tuple(warnings),
            unresolved_refs=tuple(unresolved),
        )
