"""Numbered bookmarks on note headings."""
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from notesync.exceptions import (BookmarkNotFoundError,
                                 IdentifierMissingError, NoteNotFoundError,
                                 OrphanedReferenceError, StorageError,
                                 ValidationError)
from notesync.models.schema import (BookmarkRecord, BookmarkView, Heading,
                                    NoteRecord)
from notesync.observability import traced
from notesync.storage.markdown_parser import OutlineExtractor, heading_index_at
from notesync.storage.mirror import NoteMirror

logger = logging.getLogger(__name__)


class BookmarkService:
    """Service layer for bookmark CRUD and resolution."""

    def __init__(
        self,
        mirror: NoteMirror,
        extractor: Optional[OutlineExtractor] = None,
        notes_dir: Optional[Path] = None,
    ):
        self.mirror = mirror
        self.extractor = extractor or OutlineExtractor()
        self.notes_dir = Path(notes_dir or mirror.notes_dir)

    @staticmethod
    def _check_number(number: int) -> None:
        if isinstance(number, bool) or not isinstance(number, int) or number < 1:
            raise ValidationError(
                "Bookmark number must be a positive integer",
                field="number",
                value=number,
            )

    @traced("bookmark_add")
    def add(self, number: int, path: Path, cursor_line: int = 1) -> BookmarkRecord:
        """Bookmark the heading that owns ``cursor_line`` in a note.

        Any existing bookmark with this number is replaced.

        Raises:
            ValidationError: Bad number, or no heading at or above the line.
            IdentifierMissingError: The note has no id yet.
            NoteNotFoundError: The note is not in the mirror.
        """
        self._check_number(number)
        path = Path(path)
        outline = self.extractor.extract_file(path)
        if not outline.headings or cursor_line < outline.headings[0].line:
            raise ValidationError(
                "No heading found at or above the cursor line",
                field="cursor_line",
                value=cursor_line,
            )
        if not outline.note_id:
            raise IdentifierMissingError(str(path))

        heading = outline.headings[heading_index_at(outline, cursor_line) - 1]
        record = self.mirror.add_bookmark(
            number, outline.note_id, heading.index, heading.text
        )
        logger.info(f"Bookmark {number} set on '{heading.text}' in {path.name}")
        return record

    def remove(self, number: int) -> bool:
        return self.mirror.remove_bookmark(number)

    def list(self) -> List[BookmarkView]:
        return self.mirror.list_bookmarks()

    @traced("bookmark_resolve")
    def resolve(self, number: int) -> Tuple[NoteRecord, Heading]:
        """Find where a bookmark points now, against the note file on disk.

        Raises:
            BookmarkNotFoundError: No bookmark with this number.
            OrphanedReferenceError: Note, file or heading is gone; the
                bookmark has been removed.
        """
        bookmark = self.mirror.get_bookmark(number)
        if bookmark is None:
            raise BookmarkNotFoundError(number)
        note = self.mirror.get_note(bookmark.note_id)
        if note is None:
            self.mirror.remove_bookmark(number)
            raise OrphanedReferenceError(number, "note is gone")

        try:
            headings = self.extractor.extract_file(self.notes_dir / note.filename).headings
        except StorageError as e:
            self.mirror.remove_bookmark(number)
            raise OrphanedReferenceError(number, "note file is unreadable") from e
        return self.mirror.resolve_bookmark(number, headings)

    def note_title(self, note_id: str) -> Optional[str]:
        """Current title of a mirrored note.

        Raises:
            NoteNotFoundError: If the note is not mirrored.
        """
        note = self.mirror.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note.title
