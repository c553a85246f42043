"""Content hashing and modification-time gating."""
import datetime
import hashlib
import logging
from datetime import timezone
from pathlib import Path
from typing import Optional, Union

from notesync.exceptions import ErrorCode, StorageError
from notesync.models.schema import parse_timestamp

logger = logging.getLogger(__name__)


class ChangeDetector:
    """Decides whether a note file needs to be re-synchronized.

    The digest covers the full raw bytes of the file, metadata block
    included, so any edit anywhere in the file is detected.
    """

    @staticmethod
    def hash_content(data: Union[bytes, str]) -> str:
        """SHA-256 hex digest of content (str is encoded as UTF-8)."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return hashlib.sha256(data).hexdigest()

    def hash_file(self, path: Path) -> str:
        """Hash a file's bytes.

        Raises:
            StorageError: If the file cannot be read.
        """
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise StorageError(
                f"Failed to read note {Path(path).name} for hashing",
                operation="hash",
                path=str(path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e
        return self.hash_content(data)

    def needs_sync(self, path: Path, stored_hash: Optional[str]) -> bool:
        """True unless the file's digest equals the stored one."""
        if not stored_hash:
            return True
        return self.hash_file(path) != stored_hash

    @staticmethod
    def file_mtime(path: Path) -> datetime.datetime:
        try:
            stat = Path(path).stat()
        except OSError as e:
            raise StorageError(
                f"Failed to stat note {Path(path).name}",
                operation="stat",
                path=str(path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e
        return datetime.datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

    def file_mtime_iso(self, path: Path) -> str:
        """Modification time as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
        mtime = self.file_mtime(path)
        return mtime.strftime("%Y-%m-%dT%H:%M:%S.") + f"{mtime.microsecond // 1000:03d}Z"

    def is_newer_than(self, path: Path, updated: Optional[str]) -> bool:
        """Check whether the file changed after ``updated``.

        The mtime is truncated to whole seconds before the comparison,
        matching the precision of normalized headers. A missing or
        unparseable ``updated`` counts as older than any file.
        """
        reference = parse_timestamp(updated)
        if reference is None:
            return True
        mtime = self.file_mtime(path).replace(microsecond=0)
        newer = mtime > reference
        if not newer:
            logger.debug(f"{Path(path).name} not modified since {updated}")
        return newer
