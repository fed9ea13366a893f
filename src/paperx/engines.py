"""Engine registry and resolver.

Engines differ only in data (executable names, argument templates and two
capability flags), so they live in one table indexed by name.  Resolution
probes ``PATH`` read-only and never spawns a process.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from .errors import EngineNotFound, NoEngineAvailable
from .models import EngineSpec, ResolvedEngine

logger = logging.getLogger(__name__)

Probe = Callable[[str], "str | None"]

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_TEX_ARGS = (
    "-interaction=nonstopmode",
    "-file-line-error",
    "-output-directory={outdir}",
    "{main}",
)

ENGINE_REGISTRY: dict[str, EngineSpec] = {
    # Self-contained: resolves references and runs bibtex internally.
    "tectonic": EngineSpec(
        name="tectonic",
        executable_candidates=("tectonic",),
        arguments=("-X", "compile", "{main}", "--outdir", "{outdir}", "--keep-logs", "--keep-intermediates"),
    ),
    # latexmk drives its own rerun/bibtex loop.
    "latexmk": EngineSpec(
        name="latexmk",
        executable_candidates=("latexmk",),
        arguments=("-pdf", "-interaction=nonstopmode", "-output-directory={outdir}", "{main}"),
    ),
    "pdflatex": EngineSpec(
        name="pdflatex",
        executable_candidates=("pdflatex",),
        arguments=_TEX_ARGS,
        supports_bibliography=True,
        requires_multi_pass=True,
    ),
    "lualatex": EngineSpec(
        name="lualatex",
        executable_candidates=("lualatex",),
        arguments=_TEX_ARGS,
        supports_bibliography=True,
        requires_multi_pass=True,
    ),
    "xelatex": EngineSpec(
        name="xelatex",
        executable_candidates=("xelatex",),
        arguments=_TEX_ARGS,
        supports_bibliography=True,
        requires_multi_pass=True,
    ),
}

# Fastest / most self-contained first.
DEFAULT_PREFERENCE: tuple[str, ...] = ("tectonic", "latexmk", "pdflatex", "lualatex", "xelatex")


def get_engine_spec(name: str, registry: Mapping[str, EngineSpec] = ENGINE_REGISTRY) -> EngineSpec | None:
    return registry.get(name.strip().lower())


def fallback_order(
    preferred: str | None = None,
    default: Sequence[str] = DEFAULT_PREFERENCE,
    registry: Mapping[str, EngineSpec] = ENGINE_REGISTRY,
) -> tuple[str, ...]:
    """Return the probe order: *preferred* first, then *default* order.

    Unknown preferred names are ignored with a warning.  The result depends
    only on the arguments.
    """
    order = list(default)
    if preferred:
        name = preferred.strip().lower()
        if name in registry:
            if name in order:
                order.remove(name)
            order.insert(0, name)
        else:
            logger.warning("Ignoring unknown preferred engine %r in configuration", preferred)
    return tuple(order)


def engine_command(engine: ResolvedEngine, main_document: Path, output_dir: Path) -> list[str]:
    """Build the argv for one engine pass."""
    values = {"main": main_document.name, "outdir": str(output_dir)}
    return [engine.executable, *(arg.format(**values) for arg in engine.spec.arguments)]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


def _which(name: str, probe: Probe) -> str | None:
    """Find an executable, also checking the Windows ``.exe`` name (WSL interop)."""
    path = probe(name)
    if path:
        return path
    return probe(f"{name}.exe")


class EngineResolver:
    """Resolve an engine name (or the default preference list) to an executable."""

    def __init__(
        self,
        registry: Mapping[str, EngineSpec] | None = None,
        *,
        default: Sequence[str] = DEFAULT_PREFERENCE,
        probe: Probe = shutil.which,
    ) -> None:
        self.registry = registry if registry is not None else ENGINE_REGISTRY
        self.default = tuple(default)
        self.probe = probe

    def _probe_spec(self, spec: EngineSpec) -> str | None:
        for candidate in spec.executable_candidates:
            path = _which(candidate, self.probe)
            if path:
                return path
        return None

    def resolve(self, explicit: str | None = None, preferred: str | None = None) -> ResolvedEngine:
        """Return the engine to build with.

        An *explicit* name is a contract: only that engine is probed and a
        miss raises ``EngineNotFound``.  Otherwise *preferred* (from the
        workspace config) is tried first, followed by the default order, and
        ``NoEngineAvailable`` is raised only when every engine is missing.
        """
        if explicit:
            spec = get_engine_spec(explicit, self.registry)
            if spec is None:
                raise EngineNotFound(explicit)
            path = self._probe_spec(spec)
            if path is None:
                raise EngineNotFound(spec.name, spec.executable_candidates)
            logger.debug("Explicit engine %s resolved to %s", spec.name, path)
            return ResolvedEngine(spec=spec, executable=path)

        order = fallback_order(preferred, self.default, self.registry)
        for name in order:
            spec = get_engine_spec(name, self.registry)
            if spec is None:
                continue
            path = self._probe_spec(spec)
            if path:
                logger.debug("Engine %s resolved to %s (order: %s)", name, path, ", ".join(order))
                return ResolvedEngine(spec=spec, executable=path)
            logger.debug("Engine %s not found, trying next", name)
        raise NoEngineAvailable(order)
