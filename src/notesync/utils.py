"""Utility functions for the notesync engine."""
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Iterable

# Astral-plane characters (emoji and friends) plus the whitespace before them
_ASTRAL_RE = re.compile(r"\s*[\U00010000-\U0010FFFF]")

_TYPOGRAPHY = str.maketrans(
    {
        "‘": "'",
        "’": "'",
        "“": '"',
        "”": '"',
        "‒": "-",
        "–": "-",
        "—": "-",
    }
)


def slugify(text: str) -> str:
    """Turn a title into a filename slug.

    Strips everything except letters, digits and whitespace, trims,
    collapses whitespace runs into single hyphens and lower-cases.

    Examples:
        "My First Note!!" -> "my-first-note"
        "  Hub: Reading   list " -> "hub-reading-list"
        "!!!" -> ""

    Args:
        text: The title to sanitize.

    Returns:
        The slug, possibly empty.
    """
    if not text:
        return ""
    kept = "".join(c for c in text if c.isalnum() or c.isspace())
    return "-".join(kept.split()).lower()


def normalize_typography(text: str) -> str:
    """Replace smart quotes and dashes with ASCII and drop emoji."""
    text = _ASTRAL_RE.sub("", text)
    return text.translate(_TYPOGRAPHY)


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def join_lines(lines: Iterable[str]) -> str:
    """Serialize buffer lines the way they are stored on disk."""
    return "".join(f"{line}\n" for line in lines)


def split_lines(content: str) -> list:
    """Split file content into buffer lines (no trailing empty element)."""
    lines = content.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line.rstrip("\r") for line in lines]


def atomic_write(path: Path, content: str) -> None:
    """Write a file via a temp file in the same directory and os.replace.

    Raises:
        OSError: If the temp file cannot be written or moved into place.
    """
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        if path.exists():
            shutil.copymode(path, tmp_name)
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
