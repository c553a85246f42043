"""Synchronization mediator.

Routes file events through the per-file pipeline

    IDLE -> FORMATTING -> TITLE_ENSURING -> METADATA_NORMALIZING
         -> MIRROR_SYNCING -> RENAME_CHECKING -> IDLE

Writing a note fires the same notifications that started the pipeline.
Each file therefore carries a PipelineContext whose two guards are raised
before the first write and lowered only on the way back to IDLE; any event
for that file arriving in between is dropped.
"""
import logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Dict, Iterator, List, Optional, Sequence, Tuple

import anyio

from notesync.config import config
from notesync.events import EventKind, FileEvent, NotificationSource
from notesync.exceptions import (ErrorCode, IdentifierMissingError,
                                 NotesyncError, StorageError)
from notesync.models.schema import (NoteRecord, Outline, PipelineState,
                                    RenameOutcome, RenamePlan, SyncResult,
                                    SyncStatus, format_timestamp)
from notesync.observability import timed_operation, traced
from notesync.services.change_detector import ChangeDetector
from notesync.services.normalizer import MetadataNormalizer, format_text
from notesync.services.rename_resolver import RenameResolver
from notesync.storage.markdown_parser import OutlineExtractor
from notesync.storage.mirror import NoteMirror
from notesync.surfaces import SurfaceRegistry
from notesync.utils import atomic_write, join_lines, split_lines

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Pipeline bookkeeping for one file."""
    path: Path
    state: PipelineState = PipelineState.IDLE
    updating_frontmatter: bool = False
    updating_db: bool = False

    @property
    def active(self) -> bool:
        return self.updating_frontmatter or self.updating_db


class SyncMediator:
    """Keeps note files, their headers and the mirror consistent.

    Args:
        mirror: Relational mirror to keep in sync.
        notes_dir: Notes root; files outside it are ignored.
        events: Notification source. The mediator subscribes to it and
            emits SAVED through it after each write.
        surfaces: Open editing surfaces, if an editor is attached.
    """

    def __init__(
        self,
        mirror: NoteMirror,
        notes_dir: Optional[Path] = None,
        events: Optional[NotificationSource] = None,
        surfaces: Optional[SurfaceRegistry] = None,
        extractor: Optional[OutlineExtractor] = None,
        normalizer: Optional[MetadataNormalizer] = None,
        detector: Optional[ChangeDetector] = None,
        resolver: Optional[RenameResolver] = None,
        special_notes: Optional[Sequence[str]] = None,
    ):
        self.mirror = mirror
        self.notes_dir = Path(notes_dir or mirror.notes_dir).expanduser().resolve()
        self.events = events or NotificationSource()
        self.surfaces = surfaces or SurfaceRegistry()
        self.extractor = extractor or OutlineExtractor()
        self.normalizer = normalizer or MetadataNormalizer(self.extractor)
        self.detector = detector or ChangeDetector()
        self.resolver = resolver or RenameResolver()
        self.special_notes = list(
            special_notes if special_notes is not None else config.special_notes
        )
        self.extension = self.resolver.extension

        self._contexts: Dict[Path, PipelineContext] = {}
        self._deferred: Deque[RenamePlan] = deque()
        self.events.subscribe(self.handle_event)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve(path: Path) -> Path:
        return Path(path).expanduser().resolve()

    def is_note(self, path: Path) -> bool:
        """A file with the note extension somewhere under the notes root."""
        path = self._resolve(path)
        if path.suffix != self.extension:
            return False
        try:
            path.relative_to(self.notes_dir)
        except ValueError:
            return False
        return True

    def is_special(self, path: Path) -> bool:
        return Path(path).name in self.special_notes

    def context(self, path: Path) -> PipelineContext:
        """Pipeline context of a file (created idle on first use)."""
        key = self._resolve(path)
        if key not in self._contexts:
            self._contexts[key] = PipelineContext(path=key)
        return self._contexts[key]

    def is_busy(self, path: Path) -> bool:
        ctx = self._contexts.get(self._resolve(path))
        return bool(ctx and ctx.active)

    @contextmanager
    def _guarded(self, path: Path) -> Iterator[PipelineContext]:
        ctx = self.context(path)
        ctx.updating_frontmatter = True
        ctx.updating_db = True
        try:
            yield ctx
        finally:
            ctx.state = PipelineState.IDLE
            ctx.updating_frontmatter = False
            ctx.updating_db = False

    def _precheck(self, path: Path) -> Optional[SyncResult]:
        if not self.is_note(path):
            logger.debug(f"Ignoring {path}: not a note under {self.notes_dir}")
            return SyncResult(path=path, status=SyncStatus.SKIPPED_OUTSIDE)
        if self.is_busy(path):
            logger.debug(f"Ignoring re-entrant event for {path.name}")
            return SyncResult(path=path, status=SyncStatus.SKIPPED_REENTRANT)
        return None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def handle_event(self, event: FileEvent):
        """Dispatch a notification to the matching entry point."""
        if event.kind in (EventKind.BEFORE_SAVE, EventKind.SAVED):
            return self.on_save(event.path)
        if event.kind == EventKind.OPEN:
            return self.on_open(event.path)
        if event.kind in (EventKind.FOCUS, EventKind.TICK):
            return self.on_focus(event.path)
        if event.kind == EventKind.DELETE:
            return self.on_delete(event.path)
        return None

    @traced("on_save")
    def on_save(self, path: Path, lines: Optional[Sequence[str]] = None) -> SyncResult:
        """Run the full save pipeline and write the result.

        Content comes from ``lines``, else the open surface, else disk.

        Raises:
            StorageError: If the file cannot be read or written.
            IdentifierMissingError: If no id could be assigned.
        """
        path = self._resolve(path)
        skipped = self._precheck(path)
        if skipped:
            return skipped

        with self._guarded(path) as ctx:
            if lines is None:
                buffer = self.surfaces.get(path)
                lines = buffer.lines if buffer else self._read(path)[1]
            special = self.is_special(path)

            ctx.state = PipelineState.FORMATTING
            lines = format_text(lines)

            ctx.state = PipelineState.TITLE_ENSURING
            outline = self.extractor.extract_lines(lines)
            if not special:
                lines, _ = self.normalizer.ensure_title(lines, path.name, outline)
                outline = self.extractor.extract_lines(lines)

            ctx.state = PipelineState.METADATA_NORMALIZING
            stored = self._stored_for(path, outline, special)
            result = self.normalizer.normalize(lines, outline, special, stored=stored)
            candidate = result.lines if result else lines
            if stored and self.detector.hash_content(join_lines(candidate)) != stored.hash:
                # Content changed since the last sync: move ``updated``
                forced = self.normalizer.normalize(
                    lines, outline, special, force=True, stored=stored
                )
                if forced:
                    candidate = forced.lines

            if not special:
                candidate = self._ensure_id(path, candidate, stored)
            content = self._write(path, candidate)
            return self._finish(ctx, path, candidate, content, stored, special, written=True)

    @traced("sync_note")
    def sync_note(self, path: Path) -> SyncResult:
        """Synchronize a note from its on-disk content.

        Unlike a save this does not reformat the body or insert a title;
        only the header is normalized.
        """
        path = self._resolve(path)
        skipped = self._precheck(path)
        if skipped:
            return skipped

        with self._guarded(path) as ctx:
            raw, lines = self._read(path)
            return self._sync_lines(ctx, path, raw, lines, force=False)

    def on_open(self, path: Path) -> SyncResult:
        """Pick up changes made outside the editor when a note is opened."""
        return self._check_external_change(path)

    def on_focus(self, path: Path) -> SyncResult:
        """Same as on_open, for an editor regaining focus."""
        return self._check_external_change(path)

    @traced("on_delete")
    def on_delete(self, path: Path) -> bool:
        """Forget a note whose file is gone. Returns True if a row was removed."""
        path = self._resolve(path)
        if path.exists():
            return False
        return self.delete_note(path)

    def delete_note(self, path: Path) -> bool:
        """Remove the mirror row of a note (the file is left alone)."""
        path = self._resolve(path)
        if not self.is_note(path) or self.is_special(path):
            return False
        removed = self.mirror.delete_note_by_filename(path.name)
        if removed:
            logger.info(f"Removed {path.name} from the mirror")
        return removed

    # ------------------------------------------------------------------
    # Deferred renames
    # ------------------------------------------------------------------

    @property
    def pending_renames(self) -> List[RenamePlan]:
        return list(self._deferred)

    def _enqueue_rename(self, plan: RenamePlan) -> None:
        # A newer plan for the same note supersedes an older one
        for queued in list(self._deferred):
            if queued.note_id == plan.note_id:
                self._deferred.remove(queued)
        self._deferred.append(plan)
        logger.debug(f"Queued rename {plan.old_path.name} -> {plan.new_filename}")

    def run_deferred(self) -> List[RenameOutcome]:
        """Execute queued renames in FIFO order, each to completion."""
        outcomes: List[RenameOutcome] = []
        while self._deferred:
            plan = self._deferred.popleft()
            with timed_operation("rename", note_id=plan.note_id) as op:
                try:
                    outcome = self.resolver.execute(plan, self.mirror, self.surfaces)
                except NotesyncError as e:
                    logger.error(f"Rename of {plan.old_path.name} failed: {e}")
                    outcome = RenameOutcome(plan=plan, renamed=False, error=str(e))
                op["renamed"] = outcome.renamed
            if outcome.renamed:
                self._contexts.pop(self._resolve(plan.old_path), None)
            outcomes.append(outcome)
        return outcomes

    async def on_save_async(
        self, path: Path, lines: Optional[Sequence[str]] = None
    ) -> Tuple[SyncResult, List[RenameOutcome]]:
        """Save, let the event loop run, then apply deferred renames."""
        result = self.on_save(path, lines)
        await anyio.sleep(0)
        return result, self.run_deferred()

    # ------------------------------------------------------------------
    # Pipeline internals
    # ------------------------------------------------------------------

    def _check_external_change(self, path: Path) -> SyncResult:
        path = self._resolve(path)
        skipped = self._precheck(path)
        if skipped:
            return skipped
        if self.surfaces.is_modified(path):
            logger.debug(f"Ignoring {path.name}: open buffer has unsaved edits")
            return SyncResult(path=path, status=SyncStatus.SKIPPED_MODIFIED)
        if not path.exists():
            return SyncResult(path=path, status=SyncStatus.UNCHANGED)

        stored = None
        if not self.is_special(path):
            outline = self.extractor.extract_file(path)
            stored = self._stored_for(path, outline, special=False)
        if stored is None:
            return self.sync_note(path)

        if not self.detector.is_newer_than(path, stored.updated):
            return SyncResult(
                path=path, status=SyncStatus.NOT_NEWER, note_id=stored.id,
                title=stored.title, hash=stored.hash,
            )
        if self.detector.hash_file(path) == stored.hash:
            return SyncResult(
                path=path, status=SyncStatus.UNCHANGED, note_id=stored.id,
                title=stored.title, hash=stored.hash,
            )

        logger.info(f"{path.name} changed outside the editor, resyncing")
        with self._guarded(path) as ctx:
            raw, lines = self._read(path)
            return self._sync_lines(ctx, path, raw, lines, force=True)

    def _sync_lines(
        self,
        ctx: PipelineContext,
        path: Path,
        raw: bytes,
        lines: List[str],
        force: bool,
    ) -> SyncResult:
        special = self.is_special(path)
        ctx.state = PipelineState.METADATA_NORMALIZING
        outline = self.extractor.extract_lines(lines)
        stored = self._stored_for(path, outline, special)
        digest = self.detector.hash_content(raw)

        if stored and not force:
            if stored.hash == digest and stored.filename == path.name:
                ctx.state = PipelineState.RENAME_CHECKING
                self._check_rename(stored.id, path, stored.title)
                return SyncResult(
                    path=path, status=SyncStatus.UNCHANGED, note_id=stored.id,
                    title=stored.title, hash=stored.hash,
                )
            force = stored.hash != digest

        result = self.normalizer.normalize(
            lines, outline, special, force=force, stored=stored
        )
        candidate = result.lines if result else lines
        if not special:
            candidate = self._ensure_id(path, candidate, stored)
        if candidate is lines:
            return self._finish(ctx, path, lines, raw, stored, special, written=False)
        content = self._write(path, candidate)
        return self._finish(ctx, path, candidate, content, stored, special, written=True)

    def _finish(
        self,
        ctx: PipelineContext,
        path: Path,
        lines: List[str],
        content: bytes,
        stored: Optional[NoteRecord],
        special: bool,
        written: bool,
    ) -> SyncResult:
        """MIRROR_SYNCING and RENAME_CHECKING for a normalized buffer."""
        digest = self.detector.hash_content(content)
        if special:
            return SyncResult(
                path=path, status=SyncStatus.NORMALIZED, hash=digest, written=written
            )

        ctx.state = PipelineState.MIRROR_SYNCING
        outline = self.extractor.extract_lines(lines)
        if not outline.note_id:
            raise IdentifierMissingError(str(path))

        note_id = outline.note_id
        status = SyncStatus.UNCHANGED
        if not (stored and stored.id == note_id and stored.hash == digest
                and stored.filename == path.name):
            now = format_timestamp()
            record = NoteRecord(
                id=note_id,
                filename=path.name,
                title=outline.title,
                hash=digest,
                created=outline.metadata.get("created") or now,
                updated=outline.metadata.get("updated") or now,
            )
            self.mirror.sync_note(record, outline.headings)
            status = SyncStatus.SYNCED

        ctx.state = PipelineState.RENAME_CHECKING
        plan = self._check_rename(note_id, path, outline.title)
        return SyncResult(
            path=path,
            status=status,
            note_id=note_id,
            title=outline.title,
            hash=digest,
            written=written,
            rename=plan,
        )

    def _ensure_id(
        self, path: Path, lines: List[str], stored: Optional[NoteRecord]
    ) -> List[str]:
        """Make sure a regular note's buffer carries an id before it is written.

        A buffer without one gets a single forced normalization. If that
        still yields no id the pipeline aborts with the file untouched.

        Raises:
            IdentifierMissingError: If no id could be assigned.
        """
        outline = self.extractor.extract_lines(lines)
        if outline.note_id:
            return lines
        logger.warning(f"{path.name} has no id, forcing header normalization")
        result = self.normalizer.normalize(
            lines, outline, is_special=False, force=True, stored=stored
        )
        if result is None or not self.extractor.extract_lines(result.lines).note_id:
            raise IdentifierMissingError(str(path))
        return result.lines

    def _check_rename(
        self, note_id: str, path: Path, title: Optional[str]
    ) -> Optional[RenamePlan]:
        plan = self.resolver.plan_rename(note_id, path, title)
        if plan:
            self._enqueue_rename(plan)
        return plan

    def _stored_for(
        self, path: Path, outline: Outline, special: bool
    ) -> Optional[NoteRecord]:
        """Mirror row for a note: by header id, else by filename."""
        if special:
            return None
        stored = None
        if outline.note_id:
            stored = self.mirror.get_note(outline.note_id)
        return stored or self.mirror.get_note_by_filename(path.name)

    def _read(self, path: Path) -> Tuple[bytes, List[str]]:
        try:
            raw = path.read_bytes()
            return raw, split_lines(raw.decode("utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(
                f"Failed to read note {path.name}",
                operation="read",
                path=str(path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    def _write(self, path: Path, lines: Sequence[str]) -> bytes:
        """Write a buffer atomically, then report it like an editor would."""
        content = join_lines(lines)
        try:
            atomic_write(path, content)
        except OSError as e:
            raise StorageError(
                f"Failed to write note {path.name}",
                operation="write",
                path=str(path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        self.surfaces.mark_saved(path, lines)
        self.events.emit(EventKind.SAVED, path)
        return content.encode("utf-8")
