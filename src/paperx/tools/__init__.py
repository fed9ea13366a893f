"""Deterministic helpers: subprocess passes, log parsing, workspace scaffolding."""

from .compiler import find_fatal_markers, format_build_errors, parse_log
from .scaffold import add_figure, add_section, create_workspace

__all__ = [
    "add_figure",
    "add_section",
    "create_workspace",
    "find_fatal_markers",
    "format_build_errors",
    "parse_log",
]
