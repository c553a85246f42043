"""Startup indexing of the whole notes root."""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import anyio

from notesync.config import config
from notesync.exceptions import NotesyncError
from notesync.models.schema import SyncStatus
from notesync.services.mediator import SyncMediator

logger = logging.getLogger(__name__)


@dataclass
class IndexSummary:
    """Counters for one indexing run."""
    scanned: int = 0
    synced: int = 0
    unchanged: int = 0
    failed: int = 0
    removed: int = 0
    renamed: int = 0
    failed_files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "synced": self.synced,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "removed": self.removed,
            "renamed": self.renamed,
        }


class NoteIndexer:
    """Brings the mirror up to date with every note on disk.

    Work is split into small batches with a yield to the event loop after
    each one, so a large notes root never blocks other tasks for long.
    """

    def __init__(self, mediator: SyncMediator):
        self.mediator = mediator
        self.mirror = mediator.mirror

    def note_files(self) -> List[Path]:
        """Note files under the notes root, sorted by path."""
        root = self.mediator.notes_dir
        if not root.exists():
            return []
        return sorted(
            p for p in root.rglob(f"*{self.mediator.extension}") if p.is_file()
        )

    def cleanup(self) -> int:
        """Drop rows of deleted files and of special notes."""
        removed = self.mirror.clean_deleted_notes(self.mediator.notes_dir)
        removed += self.mirror.clean_special_notes(self.mediator.special_notes)
        return removed

    async def index_all(self, batch_size: Optional[int] = None) -> IndexSummary:
        """Index every note, yielding after each batch.

        A file failing with a NotesyncError is logged and counted; it never
        aborts the run.
        """
        batch_size = batch_size or config.index_batch_size
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        summary = IndexSummary(removed=self.cleanup())
        files = self.note_files()

        for start in range(0, len(files), batch_size):
            for path in files[start:start + batch_size]:
                summary.scanned += 1
                try:
                    result = self.mediator.sync_note(path)
                except NotesyncError as e:
                    logger.error(f"Cannot index {path.name}: {e}")
                    summary.failed += 1
                    summary.failed_files.append(path.name)
                    continue
                if result.status == SyncStatus.SYNCED:
                    summary.synced += 1
                else:
                    summary.unchanged += 1
            summary.renamed += sum(
                1 for outcome in self.mediator.run_deferred() if outcome.renamed
            )
            await anyio.sleep(0)

        if summary.failed_files:
            logger.warning(
                f"Failed to index {summary.failed} files: "
                f"{summary.failed_files[:5]}{'...' if summary.failed > 5 else ''}"
            )
        logger.info(
            f"Indexing complete: {summary.scanned} scanned, {summary.synced} synced, "
            f"{summary.removed} stale rows removed, {summary.failed} failed"
        )
        return summary

    def shutdown_cleanup(self) -> int:
        """Final purge of stale and special rows before exit."""
        removed = self.cleanup()
        logger.info(f"Shutdown cleanup removed {removed} rows")
        return removed
