"""Workspace scaffolding: new paper, new section, new figure.

A workspace looks like::

    my-paper/
    ├── paperx.yaml
    ├── tex/
    │   ├── main.tex          # \\input{} calls after the ``% paperx:sections`` marker
    │   └── sections/
    │       └── introduction.tex
    ├── bib/references.bib
    ├── figures/
    ├── .gitignore
    └── README.md
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path

from ..config import CONFIG_FILE, write_config
from ..errors import WorkspaceError
from ..models import WorkspaceConfig

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

# template name -> (main.tex template file, engine written to paperx.yaml)
TEMPLATES: dict[str, tuple[str, str]] = {
    "article_en": ("article_en.tex", "tectonic"),
    "ltjs_ja": ("ltjs_ja.tex", "lualatex"),
}

SECTIONS_MARKER_RE = re.compile(r"^%\s*paperx:sections\s*$", re.MULTILINE)
_END_DOCUMENT_RE = re.compile(r"^\\end\{document\}", re.MULTILINE)
_SECTION_INPUT_RE = re.compile(r"^\\input\{sections/[^}]*\}[ \t]*$", re.MULTILINE)
_SECTION_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\- ]*$")


def _read_template(name: str) -> str:
    return (TEMPLATES_DIR / name).read_text(encoding="utf-8")


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def titleize(name: str) -> str:
    """``related-work`` → ``Related Work``."""
    parts = re.split(r"[-_ ]", name)
    return " ".join(p[:1].upper() + p[1:] for p in parts if p)


# ---------------------------------------------------------------------------
# new
# ---------------------------------------------------------------------------


def create_workspace(
    root: str | Path,
    *,
    template: str = "article_en",
    title: str = "Untitled Paper",
    author: str = "First Last",
    affiliation: str = "Affiliation",
    keywords: str = "keyword1, keyword2",
    abstract: str = "This is the abstract.",
) -> WorkspaceConfig:
    """Create a new paper workspace at *root* and return its configuration."""
    root = Path(root)
    if template not in TEMPLATES:
        raise WorkspaceError(f"Unknown template {template!r}. Available: {', '.join(TEMPLATES)}")
    if root.exists():
        raise WorkspaceError(f"Directory '{root}' already exists")

    template_file, engine = TEMPLATES[template]
    main_tex = (
        _read_template(template_file)
        .replace("${TITLE}", title)
        .replace("${AUTHOR}", author)
        .replace("${AFFIL}", affiliation)
        .replace("${KEYWORDS}", keywords)
        .replace("${ABSTRACT}", abstract)
    )

    (root / "tex" / "sections").mkdir(parents=True)
    (root / "bib").mkdir()
    (root / "figures").mkdir()

    _write(root / ".gitignore", _read_template("gitignore"))
    _write(root / "README.md", _read_template("README.md"))
    _write(root / "bib" / "references.bib", _read_template("references.bib"))
    _write(root / "tex" / "main.tex", main_tex)
    _write(root / "tex" / "sections" / "introduction.tex", _read_template("introduction.tex"))

    config = WorkspaceConfig(
        main_tex="tex/main.tex",
        engine=engine,
        title=title,
        author=author,
        affiliation=affiliation,
        keywords=keywords,
        abstract_text=abstract,
    )
    write_config(config, root / CONFIG_FILE)
    logger.info("Created workspace %s from template %s", root, template)
    return config


# ---------------------------------------------------------------------------
# add section
# ---------------------------------------------------------------------------


def include_section(main_text: str, section_stem: str) -> str:
    """Return *main_text* with ``\\input{sections/<stem>}`` added.

    Sections keep the order they were added in: the include goes after the
    last ``\\input{sections/...}`` following the ``% paperx:sections``
    marker, right after the marker if there is none yet, or before
    ``\\end{document}`` when the marker is missing.
    """
    include_line = f"\\input{{sections/{section_stem}}}"
    marker = SECTIONS_MARKER_RE.search(main_text)
    if marker:
        insert_at = marker.end()
        for match in _SECTION_INPUT_RE.finditer(main_text, marker.end()):
            insert_at = match.end()
        return main_text[:insert_at] + "\n" + include_line + main_text[insert_at:]
    end = _END_DOCUMENT_RE.search(main_text)
    if end:
        return main_text[:end.start()] + include_line + "\n\n" + main_text[end.start():]
    raise WorkspaceError("Neither a '% paperx:sections' marker nor \\end{document} found in main document")


def add_section(workspace: str | Path, name: str, main_tex: str = "tex/main.tex") -> Path:
    """Create ``sections/<name>.tex`` next to the main document and include it."""
    workspace = Path(workspace)
    if not _SECTION_NAME_RE.match(name):
        raise WorkspaceError(f"Invalid section name {name!r}")
    main_path = workspace / main_tex
    if not main_path.is_file():
        raise WorkspaceError(f"Main tex not found: {main_path}")

    stem = name.replace(" ", "-")
    path = main_path.parent / "sections" / f"{stem}.tex"
    if path.exists():
        raise WorkspaceError(f"Section already exists: {path}")

    main_text = main_path.read_text(encoding="utf-8")
    updated = include_section(main_text, stem)
    _write(path, f"% Section: {name}\n\\section{{{titleize(name)}}}\nWrite here.\n")
    main_path.write_text(updated, encoding="utf-8")
    logger.info("Added section %s", path)
    return path


# ---------------------------------------------------------------------------
# add figure
# ---------------------------------------------------------------------------


def figure_snippet(file_name: str, label: str, caption: str) -> str:
    return (
        "\\begin{figure}[t]\n"
        "  \\centering\n"
        f"  \\includegraphics[width=0.9\\linewidth]{{figures/{file_name}}}\n"
        f"  \\caption{{{caption}}}\n"
        f"  \\label{{{label}}}\n"
        "\\end{figure}\n"
    )


def add_figure(
    workspace: str | Path,
    source: str | Path,
    *,
    label: str | None = None,
    caption: str | None = None,
    figures_dir: str = "figures",
) -> tuple[Path, str]:
    """Copy *source* into the figures directory; return (destination, LaTeX snippet)."""
    src = Path(source)
    if not src.is_file():
        raise WorkspaceError(f"Figure not found: {src}")
    dest_dir = Path(workspace) / figures_dir
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / src.name
    if dest.resolve() != src.resolve():
        shutil.copy2(src, dest)
    snippet = figure_snippet(
        src.name,
        label or f"fig:{src.stem}",
        caption or "Caption here.",
    )
    logger.info("Copied figure to %s", dest)
    return dest, snippet
