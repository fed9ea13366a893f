"""Hydra structured config dataclass.

Build settings here mirror ``WorkspaceConfig`` fields and, when set on the
command line, override the values from ``paperx.yaml`` via
``cli._to_workspace_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass

from hydra.core.config_store import ConfigStore


@dataclass
class PaperxConf:
    # --- Dispatch + global options ---
    mode: str = "build"
    workspace: str = "."
    verbose: bool = False
    quiet: bool = False

    # --- build / watch ---
    engine: str | None = None
    outdir: str | None = None
    open: bool = False
    initial_build: bool = True

    # --- WorkspaceConfig overrides (None keeps paperx.yaml's value) ---
    max_passes: int | None = None
    debounce_ms: int | None = None
    timeout: int | None = None

    # --- new ---
    name: str | None = None
    template: str = "article_en"
    title: str = "Untitled Paper"
    author: str = "First Last"
    affiliation: str = "Affiliation"
    keywords: str = "keyword1, keyword2"
    abstract: str = "This is the abstract."

    # --- add_figure ---
    figure: str | None = None
    label: str | None = None
    caption: str | None = None


# Keys in PaperxConf that map 1:1 onto WorkspaceConfig fields.
WORKSPACE_OVERRIDE_KEYS = frozenset({"max_passes", "debounce_ms", "timeout"})


def register_configs() -> None:
    """Register the structured config schema with Hydra's ConfigStore."""
    cs = ConfigStore.instance()
    cs.store(name="paperx_schema", node=PaperxConf)
