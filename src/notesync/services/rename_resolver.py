"""Keeps note filenames in step with their titles."""
import logging
import os
from pathlib import Path
from typing import Optional

from notesync.config import config
from notesync.exceptions import ErrorCode, NoteNotFoundError, StorageError
from notesync.models.schema import RenameOutcome, RenamePlan
from notesync.storage.mirror import NoteMirror
from notesync.surfaces import SurfaceRegistry
from notesync.utils import slugify

logger = logging.getLogger(__name__)


class RenameResolver:
    """Derives canonical filenames (``<id>-<slug><ext>``) and applies renames."""

    def __init__(
        self,
        empty_slug: Optional[str] = None,
        extension: Optional[str] = None,
    ):
        self.empty_slug = empty_slug or config.empty_slug
        self.extension = extension or config.note_extension

    def slugify(self, title: str) -> str:
        """Slug for a title, falling back to the configured placeholder."""
        return slugify(title) or self.empty_slug

    def canonical_filename(self, note_id: str, title: str) -> str:
        return f"{note_id}-{self.slugify(title)}{self.extension}"

    def plan_rename(
        self, note_id: str, current_path: Path, title: Optional[str]
    ) -> Optional[RenamePlan]:
        """Plan a rename when the filename no longer matches the title.

        Returns:
            The plan, or None when the name is canonical or there is no title.
        """
        if not note_id or title is None:
            return None
        current_path = Path(current_path)
        expected = self.canonical_filename(note_id, title)
        if current_path.name == expected:
            return None
        return RenamePlan(
            note_id=note_id,
            old_path=current_path,
            new_path=current_path.with_name(expected),
        )

    def execute(
        self,
        plan: RenamePlan,
        mirror: NoteMirror,
        surfaces: Optional[SurfaceRegistry] = None,
    ) -> RenameOutcome:
        """Carry out a planned rename.

        Order: mirror filename column, file on disk, open surfaces. If the
        disk rename fails the mirror column is put back.

        Raises:
            StorageError: If the target exists as a different file or the
                rename itself fails.
        """
        old_path, new_path = plan.old_path, plan.new_path
        if not old_path.exists():
            # Already moved (or deleted) by someone else
            logger.info(f"Skipping rename of {old_path.name}: file is gone")
            return RenameOutcome(plan=plan, renamed=False, error="source missing")
        if new_path.exists() and not _same_file(old_path, new_path):
            raise StorageError(
                f"Refusing to rename {old_path.name}: {new_path.name} already exists",
                operation="rename",
                path=str(new_path),
                code=ErrorCode.STORAGE_RENAME_FAILED,
            )

        previous = mirror.get_note(plan.note_id)
        try:
            mirror.update_filename(plan.note_id, plan.new_filename)
        except NoteNotFoundError:
            previous = None

        try:
            os.replace(old_path, new_path)
        except OSError as e:
            if previous is not None:
                mirror.update_filename(plan.note_id, previous.filename)
            raise StorageError(
                f"Failed to rename {old_path.name}",
                operation="rename",
                path=str(old_path),
                code=ErrorCode.STORAGE_RENAME_FAILED,
                original_error=e,
            ) from e

        retargeted = surfaces.retarget(old_path, new_path) if surfaces else False
        logger.info(f"Renamed {old_path.name} -> {new_path.name}")
        return RenameOutcome(plan=plan, renamed=True, retargeted=retargeted)


def _same_file(a: Path, b: Path) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False
