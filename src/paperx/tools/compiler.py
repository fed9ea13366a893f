"""Subprocess execution and LaTeX log parsing for build passes.

Runs engine / bibliography passes with captured output, classifies the
captured text for fatal markers (some engines exit 0 on recoverable errors),
parses ``.log`` files for errors/warnings **with line numbers** and computes
digests of the auxiliary files that decide whether another pass is needed.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import EngineLaunchError
from ..models import BuildResult, CompilationWarning, Severity

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Running tools
# ---------------------------------------------------------------------------


@dataclass
class ToolRun:
    """Captured outcome of one engine or bibliography pass."""

    label: str
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def run_tool(
    argv: Sequence[str],
    *,
    cwd: Path,
    timeout: int,
    label: str,
    env: Mapping[str, str] | None = None,
) -> ToolRun:
    """Run one pass and capture stdout/stderr in full.

    Raises ``EngineLaunchError`` when the executable cannot be started;
    ``subprocess.TimeoutExpired`` propagates to the caller.
    """
    logger.info("%s: %s (in %s)", label, " ".join(argv), cwd)
    try:
        proc = subprocess.run(
            list(argv),
            cwd=str(cwd),
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            env=dict(env) if env is not None else None,
        )
    except OSError as exc:
        raise EngineLaunchError(f"Could not start {argv[0]}: {exc}") from exc
    return ToolRun(
        label=label,
        argv=list(argv),
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )


def tail(text: str, limit: int = 2000) -> str:
    """Return the last *limit* characters of *text*."""
    return text[-limit:] if len(text) > limit else text


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

# Markers that mean the pass failed even when the exit status is 0.
_FATAL_MARKERS = (
    re.compile(r"^!\s+\S", re.MULTILINE),                                   # TeX error
    re.compile(r"^\S+\.tex:\d+:\s", re.MULTILINE),                          # -file-line-error form
    re.compile(r"Fatal error occurred", re.IGNORECASE),
    re.compile(r"Emergency stop"),
    re.compile(r"^error:\s", re.MULTILINE),                                 # tectonic
    re.compile(r"\(There (?:was|were) \d+ error messages?\)"),              # bibtex
    re.compile(r"I couldn't open (?:database|style|file name)"),            # bibtex
    re.compile(r"^ERROR - ", re.MULTILINE),                                 # biber
)


def find_fatal_markers(text: str) -> list[str]:
    """Return the lines of *text* that carry a known fatal-error marker."""
    found: list[str] = []
    for pattern in _FATAL_MARKERS:
        for m in pattern.finditer(text):
            start = text.rfind("\n", 0, m.start()) + 1
            end = text.find("\n", m.end())
            line = text[start:end if end != -1 else len(text)].strip()
            if line and line not in found:
                found.append(line)
    return found


# ---------------------------------------------------------------------------
# Auxiliary state (fixed-point detection)
# ---------------------------------------------------------------------------

# Files whose content feeds the next pass: labels, citations, bbl, toc/lof/lot,
# hyperref bookmarks.
AUX_SUFFIXES = (".aux", ".bbl", ".toc", ".lof", ".lot", ".out")


def aux_state(output_dir: Path, job_name: str) -> tuple[tuple[str, str | None], ...]:
    """Digest the auxiliary files of *job_name* in *output_dir*.

    Two equal snapshots from consecutive passes mean cross-references and
    the bibliography reached a fixed point.
    """
    state: list[tuple[str, str | None]] = []
    for suffix in AUX_SUFFIXES:
        path = output_dir / f"{job_name}{suffix}"
        digest: str | None = None
        if path.exists():
            digest = hashlib.sha256(path.read_bytes()).hexdigest()
        state.append((suffix, digest))
    return tuple(state)


# ---------------------------------------------------------------------------
# Bibliography detection
# ---------------------------------------------------------------------------

_BIBDATA_RE = re.compile(r"\\bibdata\{([^}]*)\}")
_BCF_DATASOURCE_RE = re.compile(r"<bcf:datasource[^>]*>([^<]+)</bcf:datasource>")


def _bib_exists(name: str, search_dirs: Sequence[Path]) -> bool:
    name = name.strip()
    if not name:
        return False
    candidates = [name] if name.endswith(".bib") else [f"{name}.bib", name]
    for directory in search_dirs:
        for candidate in candidates:
            if (directory / candidate).is_file():
                return True
    return False


def detect_bibliography(output_dir: Path, job_name: str, source_dir: Path) -> str | None:
    """Return ``"biber"``/``"bibtex"`` when the first pass referenced an existing .bib.

    biblatex leaves a ``.bcf`` control file; classic BibTeX writes
    ``\\bibdata{...}`` into the ``.aux``.  Database names are resolved
    relative to the main document's directory.
    """
    search_dirs = [source_dir, output_dir]

    bcf = output_dir / f"{job_name}.bcf"
    if bcf.exists():
        text = bcf.read_text(encoding="utf-8", errors="replace")
        if any(_bib_exists(m.group(1), search_dirs) for m in _BCF_DATASOURCE_RE.finditer(text)):
            return "biber"
        logger.info("Bibliography control file found but no .bib source exists, skipping biber")
        return None

    aux = output_dir / f"{job_name}.aux"
    if not aux.exists():
        return None
    text = aux.read_text(encoding="utf-8", errors="replace")
    for m in _BIBDATA_RE.finditer(text):
        if any(_bib_exists(db, search_dirs) for db in m.group(1).split(",")):
            return "bibtex"
    if _BIBDATA_RE.search(text):
        logger.info("\\bibdata references no existing .bib file, skipping bibtex")
    return None


def bibliography_env(source_dir: Path) -> dict[str, str]:
    """Environment letting bibtex/biber (run in the output dir) find sources.

    The trailing path separator keeps kpathsea's default search path.
    """
    env = os.environ.copy()
    for var in ("BIBINPUTS", "BSTINPUTS"):
        existing = env.get(var, "")
        env[var] = os.pathsep.join(p for p in (str(source_dir), existing) if p) + os.pathsep
    return env


def find_bibliography_tool(tool: str) -> str | None:
    """Find the bibliography tool executable (``.exe`` fallback for WSL)."""
    return shutil.which(tool) or shutil.which(f"{tool}.exe")


# ---------------------------------------------------------------------------
# Log parsing
# ---------------------------------------------------------------------------

# Patterns for LaTeX log errors/warnings
_ERROR_RE = re.compile(r"^!\s*(.*)", re.MULTILINE)
_FILE_LINE_ERROR_RE = re.compile(r"^(\S+\.tex):(\d+):\s*(.*)", re.MULTILINE)
_LINE_RE = re.compile(r"^l\.(\d+)\s*(.*)", re.MULTILINE)
_WARNING_RE = re.compile(
    r"(?:LaTeX|Package|Class)\s+(?:\w+\s+)?Warning[:\s]*(.*?)(?:\n(?!\s)|$)",
    re.MULTILINE | re.DOTALL,
)
_UNDEF_REF_RE = re.compile(
    r"LaTeX Warning: Reference `([^']+)' on page",
    re.MULTILINE,
)
_UNDEF_CIT_RE = re.compile(
    r"LaTeX Warning: Citation `([^']+)' on page",
    re.MULTILINE,
)

# Pattern matching file-open events in LaTeX logs.
# TeX Live uses (./sections/foo.tex; MiKTeX omits the ./ prefix.
_FILE_OPEN_RE = re.compile(r"\((?:\./)?([^\s()]+\.tex)\b")


def _is_absolute_path(path: str) -> bool:
    """Return True for absolute/system paths (e.g. C:\\... or /usr/...)."""
    if len(path) >= 3 and path[1] == ":" and path[2] in ("/", "\\"):
        return True  # Windows drive letter, e.g. C:\...
    if path.startswith("/"):
        return True  # Unix absolute
    return False


def _find_current_file(log_text: str, error_pos: int, main_file: str = "main.tex") -> str:
    """Determine which .tex file is active at *error_pos* in the log.

    LaTeX logs track files via parenthesis nesting: ``(./path.tex ...)``.
    We scan from the start up to *error_pos*, maintaining a filename stack.
    Returns the innermost active file, or *main_file* if the stack is
    empty or only the root file is open.

    Handles both TeX Live (``(./path.tex``) and MiKTeX (``(path.tex``)
    log formats.  Absolute/system paths are ignored.
    """
    stack: list[str] = []
    i = 0
    text = log_text[:error_pos]

    while i < len(text):
        ch = text[i]
        if ch == "(":
            m = _FILE_OPEN_RE.match(text, i)
            if m:
                fname = m.group(1)
                # Skip absolute/system paths, not project files
                if _is_absolute_path(fname):
                    stack.append("")
                    i = m.end()
                    continue
                if fname.startswith("./"):
                    fname = fname[2:]
                stack.append(fname)
                i = m.end()
                continue
            # Non-file open paren: push sentinel so ')' tracking stays balanced
            stack.append("")
            i += 1
        elif ch == ")":
            if stack:
                stack.pop()
            i += 1
        else:
            i += 1

    for name in reversed(stack):
        if name:
            return name
    return main_file


def _extract_context(tex_content: str, line_num: int, window: int = 5) -> str:
    """Extract ±window lines around a line number from .tex source."""
    lines = tex_content.split("\n")
    start = max(0, line_num - 1 - window)
    end = min(len(lines), line_num + window)
    context_lines: list[str] = []
    for i in range(start, end):
        marker = ">>>" if i == line_num - 1 else "   "
        context_lines.append(f"{marker} {i + 1:4d} | {lines[i]}")
    return "\n".join(context_lines)


def parse_log(
    log_path: str | Path,
    source_dir: Path | None = None,
    main_file: str = "main.tex",
) -> tuple[list[CompilationWarning], list[CompilationWarning], list[str]]:
    """Parse a LaTeX .log file for errors, warnings, and unresolved refs.

    When *source_dir* is given, each error with a line number gets a ±5 line
    context window read from the file it is attributed to.

    Returns (errors, warnings, unresolved_refs).
    """
    log = Path(log_path)
    if not log.exists():
        return [], [], []

    log_text = log.read_text(encoding="utf-8", errors="replace")
    errors: list[CompilationWarning] = []
    warnings: list[CompilationWarning] = []
    unresolved: list[str] = []
    sources: dict[str, str | None] = {}

    def _context(file: str, line_num: int | None) -> str:
        if source_dir is None or not line_num:
            return ""
        if file not in sources:
            path = source_dir / file
            sources[file] = path.read_text(encoding="utf-8", errors="replace") if path.is_file() else None
        content = sources[file]
        return _extract_context(content, line_num) if content else ""

    # LaTeX errors look like:
    #   ! Error message
    #   l.42 some code
    # or, with -file-line-error:
    #   ./sections/intro.tex:42: Error message
    for em in _ERROR_RE.finditer(log_text):
        error_msg = em.group(1).strip()
        line_num = None
        line_match = _LINE_RE.search(log_text[em.end():em.end() + 500])
        if line_match:
            line_num = int(line_match.group(1))
        err_file = _find_current_file(log_text, em.start(), main_file)
        errors.append(CompilationWarning(
            file=err_file,
            line=line_num,
            message=error_msg,
            severity=Severity.ERROR,
            context=_context(err_file, line_num),
        ))

    for fm in _FILE_LINE_ERROR_RE.finditer(log_text):
        err_file = fm.group(1)
        if err_file.startswith("./"):
            err_file = err_file[2:]
        line_num = int(fm.group(2))
        errors.append(CompilationWarning(
            file=err_file,
            line=line_num,
            message=fm.group(3).strip(),
            severity=Severity.ERROR,
            context=_context(err_file, line_num),
        ))

    for wm in _WARNING_RE.finditer(log_text):
        msg = wm.group(1).strip().replace("\n", " ")
        if msg:
            warnings.append(CompilationWarning(
                file=_find_current_file(log_text, wm.start(), main_file),
                message=msg,
                severity=Severity.WARNING,
            ))

    for m in _UNDEF_REF_RE.finditer(log_text):
        unresolved.append(f"ref:{m.group(1)}")
    for m in _UNDEF_CIT_RE.finditer(log_text):
        unresolved.append(f"cite:{m.group(1)}")

    return errors, warnings, sorted(set(unresolved))


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def format_build_errors(result: BuildResult) -> str:
    """Format a failed build for the console.

    Parsed errors with source context come first, then unresolved references,
    then the captured log excerpt.  The excerpt is always included: for
    bibliography failures and timeouts it is the only record of the cause.
    """
    parts: list[str] = []
    for i, err in enumerate(result.errors, 1):
        location = f"{err.file}:{err.line}" if err.line else (err.file or "?")
        parts.append(f"Error {i}: {err.message} ({location})")
        if err.context:
            parts.append(f"  Context:\n{err.context}")
        parts.append("")

    if result.unresolved_refs:
        parts.append(f"Unresolved references: {', '.join(result.unresolved_refs)}")

    if result.log_excerpt:
        if parts:
            parts.append("")
        parts.append(result.log_excerpt)

    return "\n".join(parts).strip() or "No errors found."
