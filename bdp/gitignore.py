"""
.gitignore upkeep for bdp projects.

bdp.yml and bdl.lock are committed; everything bdp generates locally is
not. ``ensure_gitignore`` keeps a marked section listing those paths and
only ever appends what is missing.
"""

from pathlib import Path
from typing import List, Union

SECTION_TITLE = "bdp (local cache, database and dependency trees)"

BDP_PATTERNS = [
    ".bdp/cache/",
    ".bdp/bdp.db",
    ".bdp/bdp.db-shm",
    ".bdp/bdp.db-wal",
    ".bdp/resolved-dependencies.json",
    ".bdp/audit.log",
]


def missing_patterns(content: str) -> List[str]:
    """Patterns from BDP_PATTERNS not yet present as lines of ``content``."""
    present = {line.strip() for line in content.splitlines()}
    return [p for p in BDP_PATTERNS if p not in present]


def _format_section(title: str, patterns: List[str]) -> str:
    lines = [f"# {title}"]
    lines.extend(patterns)
    return "\n".join(lines)


def ensure_gitignore(project_dir: Union[str, Path] = ".") -> List[str]:
    """
    Add bdp's ignore patterns to ``{project_dir}/.gitignore``.

    Patterns go under the bdp section header, which is created at the end
    of the file when absent. Returns the patterns that were added.
    """
    path = Path(project_dir) / ".gitignore"
    content = path.read_text(encoding='utf-8') if path.exists() else ""
    missing = missing_patterns(content)
    if not missing:
        return []

    header = f"# {SECTION_TITLE}"
    lines = content.splitlines()
    if header in lines:
        at = lines.index(header) + 1
        while at < len(lines) and lines[at].strip() and not lines[at].startswith("#"):
            at += 1
        lines[at:at] = missing
        text = "\n".join(lines) + "\n"
    else:
        prefix = content.rstrip("\n")
        text = (prefix + "\n\n" if prefix else "") + _format_section(SECTION_TITLE, missing) + "\n"

    path.write_text(text, encoding='utf-8')
    return missing
