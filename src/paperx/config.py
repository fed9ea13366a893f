"""Workspace configuration loader.

Reads ``paperx.yaml`` from the workspace root with ``${ENV_VAR}``
interpolation.  Loaded once per invocation; the result is passed explicitly
through ``BuildContext``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from .errors import ConfigError
from .models import WorkspaceConfig

load_dotenv()

CONFIG_FILE = "paperx.yaml"

# ---------------------------------------------------------------------------
# YAML loading with ${ENV_VAR} interpolation
# ---------------------------------------------------------------------------

_ENV_RE = re.compile(r"\$\{([^}]+)\}")


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${ENV_VAR}`` references in strings."""
    if isinstance(value, str):
        def _replace(m: re.Match) -> str:
            return os.environ.get(m.group(1), "")
        return _ENV_RE.sub(_replace, value)
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


def config_path(workspace: str | Path) -> Path:
    return Path(workspace) / CONFIG_FILE


def load_config(workspace: str | Path) -> WorkspaceConfig:
    """Load the ``WorkspaceConfig`` of *workspace*.

    A workspace without ``paperx.yaml`` gets the defaults.  Unreadable YAML
    or invalid values raise ``ConfigError``.
    """
    path = config_path(workspace)
    if not path.exists():
        return WorkspaceConfig()

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(raw).__name__}")

    try:
        return WorkspaceConfig.model_validate(_resolve_env_vars(raw))
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}:\n{exc}") from exc


def write_config(config: WorkspaceConfig, path: str | Path) -> Path:
    """Write *config* as YAML, keeping unknown keys."""
    path = Path(path)
    data = config.model_dump(mode="json", exclude_none=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
    return path
