"""Text capture into notes: insertion under headings, undo, new notes."""
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel

from notesync.config import config
from notesync.exceptions import (BoundsError, ConfigurationError, ErrorCode,
                                 StorageError, ValidationError)
from notesync.models.schema import (Heading, SyncResult, format_timestamp,
                                    generate_note_id)
from notesync.observability import traced
from notesync.services.bookmark_service import BookmarkService
from notesync.services.mediator import SyncMediator
from notesync.services.normalizer import format_text, header_key
from notesync.utils import (atomic_write, join_lines, normalize_typography,
                            split_lines)

logger = logging.getLogger(__name__)

_LIST_RE = re.compile(r"^\s*(?:[-*+]|\d+\.)\s")
_TITLE_RE = re.compile(r"^#\s+(.+)")


def _blank(line: str) -> bool:
    return not line.strip()


def _is_list(line: Optional[str]) -> bool:
    return bool(line is not None and _LIST_RE.match(line))


class InsertResult(BaseModel):
    """Where captured text ended up."""
    path: Path
    heading_index: Optional[int] = None
    line: int
    sync: Optional[SyncResult] = None


@dataclass
class UndoSnapshot:
    """Content of a note before the last insertion."""
    path: Path
    lines: List[str]
    note_id: Optional[str] = None
    inserted: List[str] = field(default_factory=list)


class NoteEditor:
    """Writes captured text into notes through the save pipeline."""

    def __init__(
        self,
        mediator: SyncMediator,
        bookmarks: Optional[BookmarkService] = None,
        inbox_note: Optional[str] = None,
    ):
        self.mediator = mediator
        self.inbox_note = inbox_note if inbox_note is not None else config.inbox_note
        self.extractor = mediator.extractor
        self.bookmarks = bookmarks or BookmarkService(
            mediator.mirror, self.extractor, mediator.notes_dir
        )
        self._undo: Optional[UndoSnapshot] = None

    @property
    def undo_snapshot(self) -> Optional[UndoSnapshot]:
        return self._undo

    def list_headings(self, path: Path) -> List[Heading]:
        """Headings of a note, last first, as a picker shows them."""
        return list(reversed(self.extractor.extract_file(Path(path)).headings))

    @traced("insert_text")
    def insert_text(
        self,
        path: Path,
        text: str,
        heading_index: Optional[int] = 1,
        prepend: bool = False,
    ) -> Optional[InsertResult]:
        """Insert text into the section of a heading.

        Args:
            path: Note to write to.
            text: Text to insert; blank text is ignored.
            heading_index: 1-based heading; None means the last heading,
                or the end of the file when the note has none.
            prepend: Insert right below the heading instead of at the end
                of its section.

        Raises:
            BoundsError: If ``heading_index`` exceeds the heading count.
            ValidationError: If the path is not a note.
        """
        if not text or not text.strip():
            return None
        path = Path(path).expanduser().resolve()
        if not self.mediator.is_note(path):
            raise ValidationError(
                f"{path.name} is not a note under the notes directory",
                field="path",
                code=ErrorCode.OUTSIDE_NOTES_DIR,
            )

        original = self._read_lines(path)
        outline = self.extractor.extract_lines(original)
        headings = outline.headings
        if heading_index is None and headings:
            heading_index = len(headings)
        if heading_index is not None and not 1 <= heading_index <= len(headings):
            raise BoundsError(heading_index, len(headings), str(path))

        text_lines = re.split(r"\r\n|\r|\n", normalize_typography(text))
        lines = list(original)
        if heading_index is None:
            pos = len(lines)
            next_heading = None
        else:
            target = headings[heading_index - 1]
            next_heading = headings[heading_index] if heading_index < len(headings) else None
            if prepend:
                pos = target.line
            elif next_heading:
                pos = next_heading.line - 1
            else:
                pos = len(lines)

        lines, first_line = self._splice(lines, pos, text_lines, next_heading is not None)
        lines = self._touch_updated(format_text(lines))

        self._undo = UndoSnapshot(
            path=path, lines=original, note_id=outline.note_id, inserted=text_lines
        )
        sync = self.mediator.on_save(path, lines)
        logger.info(f"Inserted {len(text_lines)} lines into {path.name}")
        return InsertResult(
            path=path, heading_index=heading_index, line=first_line, sync=sync
        )

    def insert_into_inbox(self, text: str) -> Optional[InsertResult]:
        """Append text under the last heading of the inbox note."""
        if not self.inbox_note:
            raise ConfigurationError(
                "No inbox note configured", config_key="inbox_note"
            )
        inbox = self.mediator.notes_dir / self.inbox_note
        if not inbox.exists():
            atomic_write(inbox, "")
        return self.insert_text(inbox, text, heading_index=None)

    def insert_at_bookmark(self, number: int, text: str) -> Optional[InsertResult]:
        """Insert text under the heading a bookmark points to."""
        note, heading = self.bookmarks.resolve(number)
        return self.insert_text(
            self.mediator.notes_dir / note.filename, text, heading.index
        )

    def undo(self) -> Optional[Path]:
        """Put back the content from before the last insertion.

        Returns:
            The restored path, or None when there is nothing to undo.
        """
        snapshot = self._undo
        if snapshot is None:
            logger.info("Nothing to undo")
            return None

        path = snapshot.path
        if not path.exists() and snapshot.note_id:
            # The insertion may have triggered a rename since
            record = self.mediator.mirror.get_note(snapshot.note_id)
            if record:
                path = self.mediator.notes_dir / record.filename
        try:
            atomic_write(path, join_lines(snapshot.lines))
        except OSError as e:
            raise StorageError(
                f"Failed to restore {path.name}",
                operation="write",
                path=str(path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        self.mediator.surfaces.mark_saved(path, snapshot.lines)
        self.mediator.sync_note(path)
        self._undo = None
        logger.info(f"Reverted changes to {path.name}")
        return path

    @traced("create_note")
    def create_note(self, text: str) -> SyncResult:
        """Create a new note whose first line is its title.

        Raises:
            ValidationError: If the title is blank.
            StorageError: If the target file exists or cannot be written.
        """
        lines = split_lines(normalize_typography(text or ""))
        first = lines[0] if lines else ""
        match = _TITLE_RE.match(first)
        title = (match.group(1) if match else first).strip()
        if not title:
            raise ValidationError("Cannot create a note with an empty title", field="title")
        if not match:
            lines[0] = f"# {title}"

        note_id = generate_note_id()
        now = format_timestamp()
        filename = self.mediator.resolver.canonical_filename(note_id, title)
        path = self.mediator.notes_dir / filename
        if path.exists():
            raise StorageError(
                f"Note file {filename} already exists",
                operation="create",
                path=str(path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
            )

        content = format_text(
            ["---", f"id: {note_id}", f"created: {now}", f"updated: {now}",
             "tags: []", "---", ""] + lines
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(path, join_lines(content))
        except OSError as e:
            raise StorageError(
                f"Failed to create note {filename}",
                operation="create",
                path=str(path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        logger.info(f"Created note {filename}")
        return self.mediator.sync_note(path)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read_lines(path: Path) -> List[str]:
        try:
            return split_lines(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(
                f"Failed to read note {path.name}",
                operation="read",
                path=str(path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    @staticmethod
    def _splice(
        lines: List[str], pos: int, text_lines: Sequence[str], has_next: bool
    ) -> Tuple[List[str], int]:
        """Insert ``text_lines`` after line ``pos`` with list-aware spacing.

        A blank line separates the text from its neighbours unless both
        sides are list items, so lists keep growing without gaps.

        Returns:
            The new lines and the 1-based line of the first inserted line.
        """
        lines = list(lines)
        prev_line = next((ln for ln in reversed(lines[:pos]) if not _blank(ln)), None)
        next_line = next((ln for ln in lines[pos:] if not _blank(ln)), None)
        first_is_list = _is_list(text_lines[0])
        last_is_list = _is_list(text_lines[-1])
        space_before = not (first_is_list and _is_list(prev_line))
        space_after = not (last_is_list and _is_list(next_line))

        while pos > 1 and pos <= len(lines) and _blank(lines[pos - 1]):
            del lines[pos - 1]
            pos -= 1
        if space_before and pos > 1 and pos <= len(lines) and not _blank(lines[pos - 1]):
            lines.insert(pos, "")
            pos += 1

        first_line = pos + 1
        for text_line in text_lines:
            lines.insert(pos, text_line)
            pos += 1

        while pos < len(lines) and _blank(lines[pos]):
            del lines[pos]
        if has_next:
            if space_after:
                lines.insert(pos, "")
        elif space_after and pos < len(lines):
            lines.insert(pos, "")
        return lines, first_line

    def _touch_updated(self, lines: List[str]) -> List[str]:
        """Set the header ``updated`` field to now, if there is a header."""
        block = self.extractor.find_block(lines)
        if not block:
            return lines
        start, end = block
        stamp = f"updated: {format_timestamp()}"
        for i in range(start + 1, end):
            if header_key(lines[i]) == "updated":
                lines[i] = stamp
                return lines
        lines.insert(end, stamp)
        return lines
