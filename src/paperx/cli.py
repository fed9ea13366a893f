"""CLI entry point using Hydra.

Usage examples:
  paperx mode=new name=my-paper title="A Study" author="Jane Doe"
  paperx mode=build engine=pdflatex open=true
  paperx mode=watch debounce_ms=800 workspace=my-paper
  paperx mode=add_section name=related-work
  paperx mode=add_figure figure=plots/loss.png caption="Training loss"
  paperx mode=open
  paperx mode=clean
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any

import hydra
from omegaconf import DictConfig, OmegaConf
from pydantic import ValidationError
from rich.markup import escape

from ._hydra_conf import WORKSPACE_OVERRIDE_KEYS, register_configs
from .artifacts import ArtifactManager
from .config import CONFIG_FILE, load_config
from .engines import EngineResolver
from .errors import ArtifactIOError, ConfigError, PaperxError, WorkspaceError
from .logging_config import RichCallbacks, console, setup_logging
from .models import BuildContext, WorkspaceConfig

logger = logging.getLogger(__name__)

register_configs()

# ---------------------------------------------------------------------------
# Hydra DictConfig → WorkspaceConfig / BuildContext bridge
# ---------------------------------------------------------------------------


def _workspace(cfg: DictConfig) -> Path:
    return Path(cfg.get("workspace") or ".").expanduser().resolve()


def _to_workspace_config(cfg: DictConfig, workspace: Path) -> WorkspaceConfig:
    """Load ``paperx.yaml`` and apply command-line overrides on top of it."""
    config = load_config(workspace)
    container: dict[str, Any] = OmegaConf.to_container(cfg, resolve=True)  # type: ignore[assignment]
    updates = {k: container[k] for k in WORKSPACE_OVERRIDE_KEYS if container.get(k) is not None}
    if container.get("outdir"):
        updates["output_dir"] = container["outdir"]
    if not updates:
        return config
    try:
        return WorkspaceConfig.model_validate({**config.model_dump(), **updates})
    except ValidationError as exc:
        raise ConfigError(f"Invalid command-line override:\n{exc}") from exc


def _output_dir(workspace: Path, config: WorkspaceConfig) -> Path:
    return (workspace / config.output_dir).resolve()


def build_context(cfg: DictConfig, callbacks: RichCallbacks) -> BuildContext:
    """Load configuration and resolve the engine, once per invocation."""
    workspace = _workspace(cfg)
    config = _to_workspace_config(cfg, workspace)
    engine = EngineResolver().resolve(explicit=cfg.get("engine"), preferred=config.engine)
    callbacks.on_engine_resolved(engine)
    context = BuildContext(
        workspace_root=workspace,
        config=config,
        engine=engine,
        output_dir=_output_dir(workspace, config),
    )
    logger.debug("Build context: %s", context.summary())
    return context


def open_artifact(path: Path) -> None:
    """Open *path* with the platform's default viewer without waiting for it."""
    try:
        if sys.platform == "win32":
            os.startfile(str(path))  # type: ignore[attr-defined]  # pylint: disable=no-member
            return
        opener = "open" if sys.platform == "darwin" else shutil.which("xdg-open")
        if opener is None:
            raise ArtifactIOError(f"No viewer found (xdg-open missing); PDF is at {path}")
        subprocess.Popen(
            [opener, str(path)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as exc:
        raise ArtifactIOError(f"Could not open {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _new_mode(cfg: DictConfig) -> None:
    from .tools.scaffold import create_workspace

    name = cfg.get("name")
    if not name:
        raise WorkspaceError("name is required for new mode (paperx mode=new name=my-paper)")

    root = Path(cfg.get("workspace") or ".") / name
    config = create_workspace(
        root,
        template=cfg.template,
        title=cfg.title,
        author=cfg.author,
        affiliation=cfg.affiliation,
        keywords=cfg.keywords,
        abstract=cfg.abstract,
    )
    console.print(f"[bold green]Created {root}[/] (engine: {config.engine})")
    console.print(f"  Next: cd {root} && paperx mode=watch")


def _build_mode(cfg: DictConfig) -> None:
    from .pipeline import BuildPipeline

    callbacks = RichCallbacks(show_passes=not cfg.get("quiet", False))
    context = build_context(cfg, callbacks)
    pipeline = BuildPipeline(
        ArtifactManager(context.output_dir),
        max_passes=context.config.max_passes,
        timeout=context.config.timeout,
        callbacks=callbacks,
    )

    result = pipeline.run(context.new_request())
    if not result.success:
        sys.exit(1)
    if cfg.get("open") and result.artifact_path is not None:
        open_artifact(result.artifact_path)


def _watch_mode(cfg: DictConfig) -> None:
    from .pipeline import BuildPipeline
    from .watcher import Watcher

    callbacks = RichCallbacks(show_passes=not cfg.get("quiet", False))
    context = build_context(cfg, callbacks)
    pipeline = BuildPipeline(
        ArtifactManager(context.output_dir),
        max_passes=context.config.max_passes,
        timeout=context.config.timeout,
        callbacks=callbacks,
    )
    watcher = Watcher(
        pipeline,
        context.new_request,
        debounce_ms=context.config.debounce_ms,
        ignore=[context.output_dir],
        callbacks=callbacks,
    )
    watcher.watch(context.watch_paths(), initial_build=cfg.get("initial_build", True))


def _add_section_mode(cfg: DictConfig) -> None:
    from .tools.scaffold import add_section

    name = cfg.get("name")
    if not name:
        raise WorkspaceError("name is required for add_section mode (paperx mode=add_section name=methods)")
    workspace = _workspace(cfg)
    config = load_config(workspace)
    path = add_section(workspace, name, config.main_tex)
    console.print(f"[green]Added section:[/] {path}")


def _add_figure_mode(cfg: DictConfig) -> None:
    from .tools.scaffold import add_figure

    figure = cfg.get("figure")
    if not figure:
        raise WorkspaceError("figure is required for add_figure mode (paperx mode=add_figure figure=plot.png)")
    dest, snippet = add_figure(
        _workspace(cfg),
        Path(figure).expanduser(),
        label=cfg.get("label"),
        caption=cfg.get("caption"),
    )
    console.print(f"[green]Copied figure to[/] {dest}")
    console.print("Paste into your section:\n")
    console.print(snippet, markup=False, highlight=False)


def _open_mode(cfg: DictConfig) -> None:
    workspace = _workspace(cfg)
    config = _to_workspace_config(cfg, workspace)
    record = ArtifactManager(_output_dir(workspace, config)).current_artifact()
    if record is None:
        console.print("[yellow]No artifact yet.[/] Run [bold]paperx mode=build[/] first.")
        sys.exit(1)
    console.print(f"Opening {record.path}")
    open_artifact(record.path)


def _clean_mode(cfg: DictConfig) -> None:
    workspace = _workspace(cfg)
    config = _to_workspace_config(cfg, workspace)
    output_dir = _output_dir(workspace, config)
    if workspace.is_relative_to(output_dir):
        raise ConfigError(f"Refusing to clean {output_dir}: it contains the workspace")
    if ArtifactManager(output_dir).clean():
        console.print(f"[green]Removed {output_dir}[/]")
    else:
        console.print(f"Nothing to clean ({output_dir} does not exist)")


_MODE_DISPATCH: dict[str, Any] = {
    "new": _new_mode,
    "build": _build_mode,
    "watch": _watch_mode,
    "add_section": _add_section_mode,
    "add_figure": _add_figure_mode,
    "open": _open_mode,
    "clean": _clean_mode,
}


# ---------------------------------------------------------------------------
# Hydra entry point
# ---------------------------------------------------------------------------


def run_mode(cfg: DictConfig) -> None:
    """Dispatch *cfg* to its mode handler; ``PaperxError`` exits with status 1."""
    mode = cfg.get("mode", "build")
    handler = _MODE_DISPATCH.get(mode)
    if handler is None:
        console.print(f"[red]Unknown mode: {mode!r}. Choose from: {', '.join(_MODE_DISPATCH)}[/]")
        sys.exit(1)

    try:
        handler(cfg)
    except PaperxError as exc:
        console.print(f"[bold red]Error:[/] {escape(str(exc))}")
        workspace = _workspace(cfg)
        if mode not in ("new", "add_figure") and not (workspace / CONFIG_FILE).exists():
            console.print(f"[dim]No {CONFIG_FILE} in {workspace}; is this a paperx workspace?[/]")
        sys.exit(1)


@hydra.main(config_path="conf", config_name="config", version_base=None)
def hydra_entry(cfg: DictConfig) -> None:
    """Hydra-managed CLI entry point."""
    setup_logging(verbose=cfg.get("verbose", False), quiet=cfg.get("quiet", False))
    run_mode(cfg)


def main() -> None:
    """Package entry point (``[project.scripts]`` target)."""
    hydra_entry()  # pylint: disable=no-value-for-parameter
