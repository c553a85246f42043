"""Data models for the notesync engine."""

import datetime
import threading
from datetime import timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

# Keys owned by the normalizer, in canonical header order
CANONICAL_KEYS: Tuple[str, ...] = ("id", "created", "updated", "tags")
SPECIAL_KEYS: Tuple[str, ...] = ("created", "updated")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
NOTE_ID_FORMAT = "%Y%m%d%H%M%S"
EMPTY_TAGS = "[]"


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def format_timestamp(dt_value: Optional[datetime.datetime] = None) -> str:
    """Format a datetime as an ISO 8601 UTC string with second precision."""
    dt_value = dt_value or utc_now()
    return dt_value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ISO 8601 timestamp, treating naive values as UTC.

    Accepts second and millisecond precision and a trailing ``Z``.
    Returns None for empty or unparseable input.
    """
    if not value:
        return None
    text = value.strip().strip("'\"")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Note ids are timestamps; the lock keeps them strictly increasing in-process
_id_lock = threading.Lock()
_last_id_time: Optional[datetime.datetime] = None


def generate_note_id(now: Optional[datetime.datetime] = None) -> str:
    """Generate a sequential timestamp id (``YYYYMMDDHHMMSS``, UTC).

    Two ids requested within the same second are spaced one second apart
    so ids stay unique within the process.
    """
    global _last_id_time

    with _id_lock:
        candidate = (now or utc_now()).astimezone(timezone.utc).replace(microsecond=0)
        if _last_id_time is not None and candidate <= _last_id_time:
            candidate = _last_id_time + datetime.timedelta(seconds=1)
        _last_id_time = candidate
        return candidate.strftime(NOTE_ID_FORMAT)


class Heading(BaseModel):
    """An ATX heading of a note."""

    text: str
    level: int = Field(ge=1, le=6)
    line: int = Field(ge=1, description="1-based source line")
    index: int = Field(ge=1, description="1-based position in document order")


class Outline(BaseModel):
    """Transient parse result for one note: metadata map plus headings."""

    metadata: Dict[str, str] = Field(default_factory=dict)
    headings: List[Heading] = Field(default_factory=list)
    # 0-based line indexes of the opening and closing ``---``
    block_start: Optional[int] = None
    block_end: Optional[int] = None

    @property
    def has_block(self) -> bool:
        return self.block_start is not None and self.block_end is not None

    @property
    def title(self) -> Optional[str]:
        """Text of the first level-1 heading."""
        for heading in self.headings:
            if heading.level == 1:
                return heading.text
        return None

    @property
    def note_id(self) -> Optional[str]:
        return self.metadata.get("id") or None


class NoteMetadata(BaseModel):
    """Typed view of a metadata block.

    ``extras`` keeps every other block line verbatim, in order, so a
    rewrite never loses keys the engine does not own.
    """

    id: Optional[str] = None
    created: Optional[str] = None
    updated: Optional[str] = None
    tags: Optional[str] = None
    extras: List[Tuple[str, str]] = Field(default_factory=list)

    def required_present(self, is_special: bool) -> bool:
        """Check the fields a normalized header must carry."""
        if is_special:
            return bool(self.created and self.updated)
        return bool(self.id and self.created and self.updated and self.tags)


class NoteRecord(BaseModel):
    """A row of the ``notes`` table."""

    id: str
    filename: str
    title: Optional[str] = None
    hash: str
    created: str
    updated: str

    @field_validator("filename")
    @classmethod
    def _basename_only(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value:
            raise ValueError("filename must be a bare file name")
        return value


class BookmarkRecord(BaseModel):
    """A row of the ``bookmarks`` table."""

    number: int
    note_id: str
    heading_index: int = Field(ge=1)
    heading_text: str


class BookmarkView(BaseModel):
    """Bookmark joined with its note title, for listings."""

    number: int
    note_id: str
    note_title: Optional[str] = None
    filename: str
    heading_index: int
    heading_text: str


class SearchResult(BaseModel):
    """A heading match that a picker can jump to."""

    note_id: str
    heading: str
    level: int
    path: Path
    line: int


class NormalizeResult(BaseModel):
    """Output of a header rewrite."""

    lines: List[str]
    id: Optional[str] = None
    created: str
    updated: str


class RenamePlan(BaseModel):
    """A filename change that is due for a note."""

    note_id: str
    old_path: Path
    new_path: Path

    @property
    def new_filename(self) -> str:
        return self.new_path.name


class RenameOutcome(BaseModel):
    """Result of executing a deferred rename."""

    plan: RenamePlan
    renamed: bool
    retargeted: bool = False
    error: Optional[str] = None


class PipelineState(str, Enum):
    """States a file passes through during one save or open event."""

    IDLE = "idle"
    FORMATTING = "formatting"
    TITLE_ENSURING = "title_ensuring"
    METADATA_NORMALIZING = "metadata_normalizing"
    MIRROR_SYNCING = "mirror_syncing"
    RENAME_CHECKING = "rename_checking"


class SyncStatus(str, Enum):
    """How a pipeline run ended."""

    SYNCED = "synced"  # Mirror row written
    UNCHANGED = "unchanged"  # Hash matched, mirror untouched
    NORMALIZED = "normalized"  # Special note: header only
    SKIPPED_REENTRANT = "skipped_reentrant"
    SKIPPED_OUTSIDE = "skipped_outside"  # Not a note under the notes root
    SKIPPED_MODIFIED = "skipped_modified"  # Open surface has unsaved edits
    NOT_NEWER = "not_newer"  # mtime gate kept the file out


class SyncResult(BaseModel):
    """Summary of one pipeline run for a single file."""

    path: Path
    status: SyncStatus
    note_id: Optional[str] = None
    title: Optional[str] = None
    hash: Optional[str] = None
    written: bool = False
    rename: Optional[RenamePlan] = None
