"""Tests for engines.py: registry, fallback order and resolution."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from paperx.engines import (
    DEFAULT_PREFERENCE,
    ENGINE_REGISTRY,
    EngineResolver,
    engine_command,
    fallback_order,
    get_engine_spec,
)
from paperx.errors import EngineNotFound, NoEngineAvailable
from paperx.models import ResolvedEngine


class FakeProbe:
    """``shutil.which`` stand-in that knows a fixed set of executables."""

    def __init__(self, *available: str) -> None:
        self.available = set(available)
        self.probed: list[str] = []

    def __call__(self, name: str) -> str | None:
        self.probed.append(name)
        return f"/usr/bin/{name}" if name in self.available else None


class TestRegistry:
    def test_default_order_names_registered_engines(self):
        assert set(DEFAULT_PREFERENCE) == set(ENGINE_REGISTRY)
        assert DEFAULT_PREFERENCE[0] == "tectonic"

    def test_self_driving_engines_are_single_pass(self):
        for name in ("tectonic", "latexmk"):
            spec = ENGINE_REGISTRY[name]
            assert spec.requires_multi_pass is False
            assert spec.supports_bibliography is False

    def test_raw_engines_need_multi_pass_and_bibliography(self):
        for name in ("pdflatex", "lualatex", "xelatex"):
            spec = ENGINE_REGISTRY[name]
            assert spec.requires_multi_pass is True
            assert spec.supports_bibliography is True

    def test_get_engine_spec_is_case_insensitive(self):
        assert get_engine_spec(" PDFLaTeX ").name == "pdflatex"
        assert get_engine_spec("context") is None
        assert get_engine_spec("pdflatex", {}) is None


class TestFallbackOrder:
    def test_no_preference_keeps_default(self):
        assert fallback_order() == DEFAULT_PREFERENCE

    def test_preference_moves_to_front(self):
        order = fallback_order("xelatex")
        assert order[0] == "xelatex"
        assert order.count("xelatex") == 1
        assert order[1:] == tuple(n for n in DEFAULT_PREFERENCE if n != "xelatex")

    def test_unknown_preference_is_ignored(self):
        assert fallback_order("context") == DEFAULT_PREFERENCE

    def test_deterministic(self):
        assert fallback_order("lualatex") == fallback_order("lualatex")


class TestEngineCommand:
    def test_pdflatex_command(self, pdflatex):
        argv = engine_command(pdflatex, Path("/w/tex/main.tex"), Path("/w/build"))
        assert argv[0] == "/usr/bin/pdflatex"
        assert "-interaction=nonstopmode" in argv
        assert "-output-directory=/w/build" in argv
        assert argv[-1] == "main.tex"

    def test_tectonic_command(self, tectonic):
        argv = engine_command(tectonic, Path("/w/tex/main.tex"), Path("/w/build"))
        assert argv == [
            "/usr/bin/tectonic", "-X", "compile", "main.tex",
            "--outdir", "/w/build", "--keep-logs", "--keep-intermediates",
        ]


class TestExplicitEngine:
    def test_explicit_engine_found(self):
        resolver = EngineResolver(probe=FakeProbe("xelatex", "tectonic"))
        engine = resolver.resolve(explicit="xelatex")
        assert isinstance(engine, ResolvedEngine)
        assert engine.name == "xelatex"
        assert engine.executable == "/usr/bin/xelatex"

    def test_explicit_engine_missing_does_not_fall_back(self):
        probe = FakeProbe("tectonic", "pdflatex")
        with patch("subprocess.run") as mock_run:
            with pytest.raises(EngineNotFound) as exc_info:
                EngineResolver(probe=probe).resolve(explicit="xelatex", preferred="tectonic")
        mock_run.assert_not_called()
        assert exc_info.value.name == "xelatex"
        assert set(probe.probed) == {"xelatex", "xelatex.exe"}

    def test_unknown_explicit_engine(self):
        probe = FakeProbe("pdflatex")
        with pytest.raises(EngineNotFound, match="unknown engine"):
            EngineResolver(probe=probe).resolve(explicit="context")
        assert probe.probed == []

    def test_windows_exe_fallback(self):
        engine = EngineResolver(probe=FakeProbe("pdflatex.exe")).resolve(explicit="pdflatex")
        assert engine.executable == "/usr/bin/pdflatex.exe"


class TestFallbackResolution:
    def test_first_available_in_default_order(self):
        engine = EngineResolver(probe=FakeProbe("xelatex", "pdflatex")).resolve()
        assert engine.name == "pdflatex"

    def test_preferred_engine_tried_first(self):
        engine = EngineResolver(probe=FakeProbe("xelatex", "pdflatex")).resolve(preferred="xelatex")
        assert engine.name == "xelatex"

    def test_unavailable_preference_falls_back(self):
        engine = EngineResolver(probe=FakeProbe("lualatex")).resolve(preferred="tectonic")
        assert engine.name == "lualatex"

    def test_nothing_installed(self):
        with pytest.raises(NoEngineAvailable) as exc_info:
            EngineResolver(probe=FakeProbe()).resolve()
        assert exc_info.value.probed == DEFAULT_PREFERENCE
        assert "tectonic" in str(exc_info.value)
        assert "TeX Live" in str(exc_info.value)

    def test_custom_default_order(self):
        resolver = EngineResolver(default=("xelatex", "pdflatex"), probe=FakeProbe("pdflatex", "xelatex"))
        assert resolver.resolve().name == "xelatex"
