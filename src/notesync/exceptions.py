"""Custom exceptions for the notesync engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    IDENTIFIER_MISSING = 1002

    # Heading / bookmark errors (2xxx)
    HEADING_OUT_OF_BOUNDS = 2001
    BOOKMARK_NOT_FOUND = 2002
    BOOKMARK_ORPHANED = 2003

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_RENAME_FAILED = 4004

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    PARSER_UNAVAILABLE = 6002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    OUTSIDE_NOTES_DIR = 7002


class NotesyncError(Exception):
    """Base exception for all notesync errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class ParserUnavailableError(NotesyncError):
    """Raised when no structural parser is configured.

    Fatal: without a parser every note would look titleless and headerless,
    and the engine would rewrite user content.
    """

    def __init__(self, message: str, parser: Optional[str] = None):
        details = {"parser": parser} if parser else {}
        super().__init__(message, code=ErrorCode.PARSER_UNAVAILABLE, details=details)
        self.parser = parser


class StorageError(NotesyncError):
    """Raised for read/write/rename failures on note files."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class BoundsError(NotesyncError):
    """Raised when a heading index lies beyond a note's heading count."""

    def __init__(self, index: int, heading_count: int, path: Optional[str] = None):
        details: Dict[str, Any] = {"index": index, "heading_count": heading_count}
        if path:
            details["path_hint"] = path.split("/")[-1]
        super().__init__(
            f"Heading index {index} out of bounds ({heading_count} headings)",
            code=ErrorCode.HEADING_OUT_OF_BOUNDS,
            details=details,
        )
        self.index = index
        self.heading_count = heading_count


class OrphanedReferenceError(NotesyncError):
    """Raised after a bookmark whose note or heading vanished was removed."""

    def __init__(self, number: int, reason: str):
        super().__init__(
            f"Bookmark {number} no longer resolves: {reason}",
            code=ErrorCode.BOOKMARK_ORPHANED,
            details={"number": number},
        )
        self.number = number
        self.reason = reason


class BookmarkNotFoundError(NotesyncError):
    """Raised when no bookmark carries the requested number."""

    def __init__(self, number: int):
        super().__init__(
            f"Bookmark not found: {number}",
            code=ErrorCode.BOOKMARK_NOT_FOUND,
            details={"number": number},
        )
        self.number = number


class IdentifierMissingError(NotesyncError):
    """Raised when a regular note has no id where one is required."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(
            message or "Note has no id in its metadata block",
            code=ErrorCode.IDENTIFIER_MISSING,
            details={"path_hint": path.split("/")[-1]},
        )
        self.path = path


class NoteNotFoundError(NotesyncError):
    """Raised when a note cannot be found in the mirror."""

    def __init__(self, identifier: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note '{identifier}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"identifier": identifier},
        )
        self.identifier = identifier


class ConfigurationError(NotesyncError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(NotesyncError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
