"""Configuration module for the notesync engine."""

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notesync import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default notes directory
_USER_ENV = Path.home() / ".notesync" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _split_names(value: Optional[str]) -> List[str]:
    """Split a comma-separated environment value into clean names."""
    if not value:
        return []
    return [name.strip() for name in value.split(",") if name.strip()]


class NotesyncConfig(BaseModel):
    """Configuration for the synchronization engine."""

    # Base directory for resolving relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESYNC_BASE_DIR", "."))
    )
    # Root directory holding the note files
    notes_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESYNC_NOTES_DIR", "notes"))
    )
    # SQLite index location
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESYNC_DATABASE_PATH", "data/db/notes.db")
        )
    )
    # The inbox is always treated as a special note
    inbox_note: str = Field(
        default_factory=lambda: os.getenv("NOTESYNC_INBOX_NOTE", "inbox.md")
    )
    # Additional special notes (comma-separated filenames)
    extra_special_notes: List[str] = Field(
        default_factory=lambda: _split_names(os.getenv("NOTESYNC_SPECIAL_NOTES"))
    )
    # Startup indexing processes this many files before yielding
    index_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTESYNC_INDEX_BATCH_SIZE", "5"))
    )
    # Slug used when a title sanitizes to nothing
    empty_slug: str = Field(
        default_factory=lambda: os.getenv("NOTESYNC_EMPTY_SLUG", "untitled")
    )
    note_extension: str = Field(default=".md")
    # Persistent log directory (None disables file logging)
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTESYNC_LOG_DIR"))
            if os.getenv("NOTESYNC_LOG_DIR")
            else None
        )
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("NOTESYNC_SERVER_NAME", "notesync"))
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_settings(self) -> "NotesyncConfig":
        """Reject settings the engine cannot operate with."""
        if self.index_batch_size < 1:
            raise ValueError("index_batch_size must be >= 1")
        if not self.note_extension.startswith("."):
            raise ValueError("note_extension must start with '.'")
        if not self.empty_slug.strip():
            logger.warning("empty_slug is blank, falling back to 'untitled'")
            self.empty_slug = "untitled"
        return self

    @property
    def special_notes(self) -> List[str]:
        """Filenames excluded from the relational mirror."""
        names = [self.inbox_note] if self.inbox_note else []
        for name in self.extra_special_notes:
            if name not in names:
                names.append(name)
        return names

    def is_special_note(self, filename: str) -> bool:
        """Check whether a filename (basename) names a special note."""
        return filename in self.special_notes

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        path = path.expanduser()
        if path.is_absolute():
            return path
        return (self.base_dir / path).resolve()

    def get_notes_dir(self) -> Path:
        """Get the absolute notes root."""
        return self.get_absolute_path(self.notes_dir)

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NotesyncConfig()
