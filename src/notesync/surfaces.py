"""Open editing surfaces.

An editing surface is a buffer an editor holds for a note: its lines,
whether it has unsaved edits, the cursor and the scroll view. The engine
only needs enough of it to read unsaved content, skip modified buffers on
focus and keep the cursor in place across rewrites and renames.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from notesync.utils import split_lines

logger = logging.getLogger(__name__)


@dataclass
class Buffer:
    """A note held open by an editor."""
    path: Path
    lines: List[str] = field(default_factory=list)
    modified: bool = False
    # (1-based line, 0-based column)
    cursor: Tuple[int, int] = (1, 0)
    view: Dict[str, int] = field(default_factory=lambda: {"topline": 1})

    def clamp_cursor(self) -> None:
        """Keep the cursor inside the buffer after its lines changed."""
        line, col = self.cursor
        line = max(1, min(line, len(self.lines) or 1))
        text = self.lines[line - 1] if self.lines else ""
        self.cursor = (line, max(0, min(col, len(text))))


class SurfaceRegistry:
    """Buffers currently open, in the order they were opened."""

    def __init__(self) -> None:
        self._buffers: List[Buffer] = []

    @staticmethod
    def _key(path: Path) -> Path:
        return Path(path).expanduser().resolve()

    def open(self, path: Path, lines: Optional[Sequence[str]] = None) -> Buffer:
        """Open (or return the already open) buffer for a path."""
        existing = self.get(path)
        if existing:
            return existing
        if lines is None:
            lines = split_lines(Path(path).read_text(encoding="utf-8"))
        buffer = Buffer(path=self._key(path), lines=list(lines))
        self._buffers.append(buffer)
        return buffer

    def get(self, path: Path) -> Optional[Buffer]:
        key = self._key(path)
        for buffer in self._buffers:
            if buffer.path == key:
                return buffer
        return None

    def all(self) -> List[Buffer]:
        return list(self._buffers)

    def is_modified(self, path: Path) -> bool:
        buffer = self.get(path)
        return bool(buffer and buffer.modified)

    def edit(self, path: Path, lines: Sequence[str]) -> Buffer:
        """Replace a buffer's lines as a user edit would (marks it modified)."""
        buffer = self.open(path, lines)
        buffer.lines = list(lines)
        buffer.modified = True
        buffer.clamp_cursor()
        return buffer

    def mark_saved(self, path: Path, lines: Sequence[str]) -> None:
        """Sync an open buffer with what was just written to disk."""
        buffer = self.get(path)
        if buffer is None:
            return
        buffer.lines = list(lines)
        buffer.modified = False
        buffer.clamp_cursor()

    def retarget(self, old_path: Path, new_path: Path) -> bool:
        """Point the buffer of ``old_path`` at ``new_path``.

        Cursor and view are kept. Any other buffer still bound to the old
        path is stale and gets closed.

        Returns:
            True if a buffer was retargeted.
        """
        buffer = self.get(old_path)
        if buffer is None:
            return False
        old_key = buffer.path
        cursor, view = buffer.cursor, dict(buffer.view)
        buffer.path = self._key(new_path)
        buffer.cursor, buffer.view = cursor, view
        stale = self.close(old_key)
        if stale:
            logger.debug(f"Closed {stale} stale buffers for {old_key.name}")
        return True

    def close(self, path: Path) -> int:
        """Close every buffer bound to a path."""
        key = self._key(path)
        before = len(self._buffers)
        self._buffers = [b for b in self._buffers if b.path != key]
        return before - len(self._buffers)
