"""Relational mirror of the note collection.

Keeps the ``notes``, ``headings`` and ``bookmarks`` tables consistent with
what the files on disk say. The files are the source of truth; every write
here replaces rows wholesale from a freshly extracted outline.
"""
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notesync.config import config
from notesync.exceptions import (BookmarkNotFoundError, ErrorCode,
                                 NoteNotFoundError, OrphanedReferenceError,
                                 StorageError)
from notesync.models.db_models import (DBBookmark, DBHeading, DBNote,
                                       get_session_factory, init_db)
from notesync.models.schema import (BookmarkRecord, BookmarkView, Heading,
                                    NoteRecord, SearchResult)
from notesync.utils import escape_like_pattern

logger = logging.getLogger(__name__)


class NoteMirror:
    """SQLAlchemy-backed index of notes, headings and bookmarks."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        notes_dir: Optional[Path] = None,
    ):
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        self.notes_dir = notes_dir or config.get_notes_dir()

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def get_note(self, note_id: str) -> Optional[NoteRecord]:
        """Get a note row by id."""
        with self.session_factory() as session:
            db_note = session.get(DBNote, note_id)
            return self._db_note_to_record(db_note) if db_note else None

    def get_note_by_filename(self, filename: str) -> Optional[NoteRecord]:
        """Get a note row by its basename."""
        with self.session_factory() as session:
            db_note = session.scalar(
                select(DBNote).where(DBNote.filename == filename)
            )
            return self._db_note_to_record(db_note) if db_note else None

    def list_notes(self) -> List[NoteRecord]:
        """All note rows, ordered by id."""
        with self.session_factory() as session:
            rows = session.scalars(select(DBNote).order_by(DBNote.id)).all()
            return [self._db_note_to_record(row) for row in rows]

    def count_notes(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(DBNote.id))) or 0

    def sync_note(self, record: NoteRecord, headings: Sequence[Heading]) -> None:
        """Upsert a note row and replace its headings in one transaction.

        A stale row that owns the same filename under a different id is
        dropped first so the UNIQUE constraint on ``filename`` holds.

        Raises:
            StorageError: If the transaction fails; nothing is committed.
        """
        try:
            with self.session_factory() as session:
                session.execute(
                    delete(DBNote).where(
                        DBNote.filename == record.filename, DBNote.id != record.id
                    )
                )
                db_note = session.get(DBNote, record.id)
                if db_note:
                    db_note.filename = record.filename
                    db_note.title = record.title
                    db_note.hash = record.hash
                    db_note.created = record.created
                    db_note.updated = record.updated
                else:
                    session.add(
                        DBNote(
                            id=record.id,
                            filename=record.filename,
                            title=record.title,
                            hash=record.hash,
                            created=record.created,
                            updated=record.updated,
                        )
                    )
                session.flush()

                # Headings: clear + rebuild
                session.execute(
                    delete(DBHeading).where(DBHeading.note_id == record.id)
                )
                for heading in headings:
                    session.add(
                        DBHeading(
                            note_id=record.id,
                            text=heading.text,
                            level=heading.level,
                            line=heading.line,
                        )
                    )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to sync note {record.id} to the mirror",
                operation="sync",
                path=record.filename,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        logger.debug(
            f"Mirrored note {record.id} ({record.filename}, {len(headings)} headings)"
        )

    def update_filename(self, note_id: str, filename: str) -> None:
        """Point a note row at a new basename.

        Raises:
            NoteNotFoundError: If no row carries ``note_id``.
        """
        with self.session_factory() as session:
            db_note = session.get(DBNote, note_id)
            if db_note is None:
                raise NoteNotFoundError(note_id)
            session.execute(
                delete(DBNote).where(DBNote.filename == filename, DBNote.id != note_id)
            )
            db_note.filename = filename
            session.commit()

    def delete_note(self, note_id: str) -> bool:
        """Delete a note row; headings and bookmarks cascade."""
        with self.session_factory() as session:
            result = session.execute(delete(DBNote).where(DBNote.id == note_id))
            session.commit()
            return result.rowcount > 0

    def delete_note_by_filename(self, filename: str) -> bool:
        with self.session_factory() as session:
            result = session.execute(
                delete(DBNote).where(DBNote.filename == filename)
            )
            session.commit()
            return result.rowcount > 0

    def get_headings(self, note_id: str) -> List[Heading]:
        """Stored headings of a note in document order."""
        with self.session_factory() as session:
            return self._load_headings(session, note_id)

    def find_by_title_or_heading(
        self,
        query: str = "",
        level: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Headings whose text, or whose note's title, contains ``query``.

        Wildcards in the query are matched literally. Results are sorted
        by heading text.
        """
        with self.session_factory() as session:
            stmt = select(DBHeading, DBNote).join(
                DBNote, DBHeading.note_id == DBNote.id
            )
            if query:
                term = f"%{escape_like_pattern(query.casefold())}%"
                stmt = stmt.where(
                    or_(
                        func.casefold(DBHeading.text).like(term, escape="\\"),
                        func.casefold(DBNote.title).like(term, escape="\\"),
                    )
                )
            if level is not None:
                stmt = stmt.where(DBHeading.level == level)
            stmt = stmt.order_by(DBHeading.text, DBNote.filename, DBHeading.line)
            if limit is not None:
                stmt = stmt.limit(limit)

            return [
                SearchResult(
                    note_id=note.id,
                    heading=heading.text,
                    level=heading.level,
                    path=self.notes_dir / note.filename,
                    line=heading.line,
                )
                for heading, note in session.execute(stmt).all()
            ]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clean_deleted_notes(self, notes_dir: Optional[Path] = None) -> int:
        """Remove rows whose file no longer exists under the notes root.

        Rows store basenames, so a file anywhere below the root counts.
        """
        root = Path(notes_dir or self.notes_dir)
        present = {p.name for p in root.rglob("*") if p.is_file()} if root.exists() else set()
        with self.session_factory() as session:
            rows = session.execute(select(DBNote.id, DBNote.filename)).all()
            stale = [note_id for note_id, filename in rows if filename not in present]
            if stale:
                session.execute(delete(DBNote).where(DBNote.id.in_(stale)))
                session.commit()
        if stale:
            logger.info(f"Removed {len(stale)} mirror rows for deleted notes")
        return len(stale)

    def clean_special_notes(self, names: Iterable[str]) -> int:
        """Remove rows that belong to special notes."""
        names = list(names)
        if not names:
            return 0
        with self.session_factory() as session:
            result = session.execute(
                delete(DBNote).where(DBNote.filename.in_(names))
            )
            session.commit()
            removed = result.rowcount
        if removed:
            logger.info(f"Removed {removed} mirror rows for special notes")
        return removed

    # ------------------------------------------------------------------
    # Bookmarks
    # ------------------------------------------------------------------

    def add_bookmark(
        self, number: int, note_id: str, heading_index: int, heading_text: str
    ) -> BookmarkRecord:
        """Create or replace the bookmark with this number.

        Raises:
            NoteNotFoundError: If the note is not mirrored.
        """
        with self.session_factory() as session:
            if session.get(DBNote, note_id) is None:
                raise NoteNotFoundError(note_id)
            session.merge(
                DBBookmark(
                    number=number,
                    note_id=note_id,
                    heading_index=heading_index,
                    heading_text=heading_text,
                )
            )
            session.commit()
        return BookmarkRecord(
            number=number,
            note_id=note_id,
            heading_index=heading_index,
            heading_text=heading_text,
        )

    def remove_bookmark(self, number: int) -> bool:
        with self.session_factory() as session:
            result = session.execute(
                delete(DBBookmark).where(DBBookmark.number == number)
            )
            session.commit()
            return result.rowcount > 0

    def get_bookmark(self, number: int) -> Optional[BookmarkRecord]:
        with self.session_factory() as session:
            row = session.get(DBBookmark, number)
            return self._db_bookmark_to_record(row) if row else None

    def list_bookmarks(self) -> List[BookmarkView]:
        """All bookmarks with their note titles, ordered by number."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBBookmark, DBNote)
                .join(DBNote, DBBookmark.note_id == DBNote.id)
                .order_by(DBBookmark.number)
            ).all()
            return [
                BookmarkView(
                    number=bookmark.number,
                    note_id=note.id,
                    note_title=note.title,
                    filename=note.filename,
                    heading_index=bookmark.heading_index,
                    heading_text=bookmark.heading_text,
                )
                for bookmark, note in rows
            ]

    def resolve_bookmark(
        self, number: int, headings: Optional[Sequence[Heading]] = None
    ) -> Tuple[NoteRecord, Heading]:
        """Find the heading a bookmark points at, repairing drift.

        Resolution order:
            1. The stored index still carries the stored text.
            2. The first heading with the stored text; its index is stored.
            3. The stored index still exists; its current text is adopted.
            4. Nothing fits; the bookmark is removed.

        Args:
            number: Bookmark number.
            headings: Current headings of the note. Defaults to the
                mirrored headings.

        Raises:
            BookmarkNotFoundError: If no bookmark has this number.
            OrphanedReferenceError: If the bookmark had to be removed.
        """
        with self.session_factory() as session:
            bookmark = session.get(DBBookmark, number)
            if bookmark is None:
                raise BookmarkNotFoundError(number)
            db_note = session.get(DBNote, bookmark.note_id)
            if db_note is None:
                session.delete(bookmark)
                session.commit()
                raise OrphanedReferenceError(number, "note is gone")
            note = self._db_note_to_record(db_note)

            current = list(headings) if headings is not None \
                else self._load_headings(session, note.id)
            index, text = bookmark.heading_index, bookmark.heading_text

            if 1 <= index <= len(current) and current[index - 1].text == text:
                return note, current[index - 1]

            for heading in current:
                if heading.text == text:
                    logger.debug(
                        f"Bookmark {number} moved from heading {index} to {heading.index}"
                    )
                    bookmark.heading_index = heading.index
                    session.commit()
                    return note, heading

            if 1 <= index <= len(current):
                heading = current[index - 1]
                logger.debug(
                    f"Bookmark {number} adopted renamed heading '{heading.text}'"
                )
                bookmark.heading_text = heading.text
                session.commit()
                return note, heading

            session.delete(bookmark)
            session.commit()
        logger.info(f"Removed orphaned bookmark {number} on note {note.id}")
        raise OrphanedReferenceError(number, f"heading '{text}' is gone")

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_headings(session: Session, note_id: str) -> List[Heading]:
        rows = session.scalars(
            select(DBHeading)
            .where(DBHeading.note_id == note_id)
            .order_by(DBHeading.line)
        ).all()
        return [
            Heading(text=row.text, level=row.level, line=row.line, index=i)
            for i, row in enumerate(rows, start=1)
        ]

    @staticmethod
    def _db_note_to_record(db_note: DBNote) -> NoteRecord:
        return NoteRecord(
            id=db_note.id,
            filename=db_note.filename,
            title=db_note.title,
            hash=db_note.hash,
            created=db_note.created,
            updated=db_note.updated,
        )

    @staticmethod
    def _db_bookmark_to_record(row: DBBookmark) -> BookmarkRecord:
        return BookmarkRecord(
            number=row.number,
            note_id=row.note_id,
            heading_index=row.heading_index,
            heading_text=row.heading_text,
        )
