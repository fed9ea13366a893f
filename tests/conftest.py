"""Shared test fixtures."""

from __future__ import annotations

import itertools
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from paperx.engines import ENGINE_REGISTRY
from paperx.models import BuildRequest, ResolvedEngine

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SAMPLE_LOGS = FIXTURES_DIR / "sample_logs"

MINIMAL_MAIN = r"""\documentclass{article}
\begin{document}
% paperx:sections

\input{sections/introduction}

\end{document}
"""


class FakeTex:
    """Stand-in for ``subprocess.run`` that writes what a TeX pass would.

    Engine passes write ``<job>.aux`` (content taken from *aux*, one entry
    per pass, the last entry repeating), ``<job>.log`` and ``<job>.pdf`` into
    the output directory named on the command line.  bibtex/biber calls write
    ``<job>.bbl`` into their working directory and exit with *bib_returncode*.
    """

    def __init__(
        self,
        aux: list[str] | None = None,
        *,
        returncode: int = 0,
        stdout: str = "",
        log: str = "",
        pdf: bool = True,
        bib_returncode: int = 0,
        bib_stdout: str = "",
    ) -> None:
        self.aux = aux or ["\\relax\n"]
        self.returncode = returncode
        self.stdout = stdout
        self.log = log
        self.pdf = pdf
        self.bib_returncode = bib_returncode
        self.bib_stdout = bib_stdout
        self.calls: list[dict] = []

    @property
    def engine_calls(self) -> list[dict]:
        return [c for c in self.calls if not c["bibliography"]]

    @property
    def bibliography_calls(self) -> list[dict]:
        return [c for c in self.calls if c["bibliography"]]

    def __call__(self, argv, cwd=None, env=None, **kwargs):
        tool = Path(argv[0]).name
        is_bib = tool in ("bibtex", "biber")
        self.calls.append({"argv": list(argv), "cwd": cwd, "env": env, "bibliography": is_bib})
        if is_bib:
            (Path(cwd) / f"{argv[1]}.bbl").write_text("\\begin{thebibliography}{1}\n\\end{thebibliography}\n")
            return subprocess.CompletedProcess(argv, self.bib_returncode, stdout=self.bib_stdout, stderr="")

        outdir, main = _parse_engine_argv(argv)
        job = Path(main).stem
        n = len(self.engine_calls)
        outdir.mkdir(parents=True, exist_ok=True)
        (outdir / f"{job}.aux").write_text(self.aux[min(n, len(self.aux)) - 1])
        (outdir / f"{job}.log").write_text(self.log)
        if self.pdf:
            (outdir / f"{job}.pdf").write_bytes(b"%PDF-1.5 fake")
        return subprocess.CompletedProcess(argv, self.returncode, stdout=self.stdout, stderr="")


def _parse_engine_argv(argv: list[str]) -> tuple[Path, str]:
    outdir = main = None
    for i, arg in enumerate(argv):
        if arg.startswith("-output-directory="):
            outdir = arg.split("=", 1)[1]
        elif arg == "--outdir":
            outdir = argv[i + 1]
        elif arg.endswith(".tex"):
            main = arg
    assert outdir is not None and main is not None, argv
    return Path(outdir), main


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def success_log_path() -> Path:
    return SAMPLE_LOGS / "success.log"


@pytest.fixture
def error_log_path() -> Path:
    return SAMPLE_LOGS / "error.log"


@pytest.fixture
def error_multifile_log_path() -> Path:
    return SAMPLE_LOGS / "error_multifile.log"


@pytest.fixture
def error_file_line_log_path() -> Path:
    return SAMPLE_LOGS / "error_file_line.log"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A minimal workspace: tex/main.tex, one section, bib/ and figures/."""
    root = tmp_path / "paper"
    (root / "tex" / "sections").mkdir(parents=True)
    (root / "bib").mkdir()
    (root / "figures").mkdir()
    (root / "tex" / "main.tex").write_text(MINIMAL_MAIN, encoding="utf-8")
    (root / "tex" / "sections" / "introduction.tex").write_text("\\section{Introduction}\nHello.\n")
    return root


@pytest.fixture
def pdflatex() -> ResolvedEngine:
    return ResolvedEngine(spec=ENGINE_REGISTRY["pdflatex"], executable="/usr/bin/pdflatex")


@pytest.fixture
def tectonic() -> ResolvedEngine:
    return ResolvedEngine(spec=ENGINE_REGISTRY["tectonic"], executable="/usr/bin/tectonic")


@pytest.fixture
def make_request(workspace: Path, pdflatex: ResolvedEngine):
    """Factory for fresh BuildRequests against the ``workspace`` fixture."""
    ids = itertools.count(1)

    def _make(engine: ResolvedEngine | None = None, reason: str = "build") -> BuildRequest:
        return BuildRequest(
            request_id=next(ids),
            workspace_root=workspace,
            main_document=workspace / "tex" / "main.tex",
            output_dir=workspace / "build",
            engine=engine or pdflatex,
            reason=reason,
        )
    return _make


@pytest.fixture
def callbacks() -> MagicMock:
    return MagicMock()
