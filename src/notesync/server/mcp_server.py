"""MCP server exposing the note synchronization engine."""

import atexit
import logging
import uuid
from pathlib import Path
from typing import Optional

from mcp.server.fastmcp import FastMCP

from notesync.config import config
from notesync.exceptions import ErrorCode, NotesyncError, ValidationError
from notesync.models.schema import SyncResult
from notesync.observability import metrics, timed_operation
from notesync.services.bookmark_service import BookmarkService
from notesync.services.editor import NoteEditor
from notesync.services.indexer import NoteIndexer
from notesync.services.mediator import SyncMediator
from notesync.storage.markdown_parser import OutlineExtractor
from notesync.storage.mirror import NoteMirror

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 1_000_000  # 1 MB


def _validate_text(text: Optional[str]) -> None:
    """Validate input string length at the MCP boundary."""
    if text and len(text) > MAX_TEXT_LENGTH:
        raise ValueError(f"Text exceeds maximum length of {MAX_TEXT_LENGTH} characters")


def _describe(result: SyncResult) -> str:
    parts = [f"{result.path.name}: {result.status.value}"]
    if result.note_id:
        parts.append(f"id {result.note_id}")
    if result.title:
        parts.append(f"title '{result.title}'")
    return ", ".join(parts)


class NotesyncMcpServer:
    """MCP server for note synchronization."""

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by all services.
                When None the mirror creates its own from config.
        """
        self.mcp = FastMCP(config.server_name, version=config.server_version)
        notes_dir = config.get_notes_dir()
        extractor = OutlineExtractor()
        self.mirror = NoteMirror(engine=engine, notes_dir=notes_dir)
        self.mediator = SyncMediator(self.mirror, notes_dir=notes_dir, extractor=extractor)
        self.indexer = NoteIndexer(self.mediator)
        self.bookmarks = BookmarkService(self.mirror, extractor, notes_dir)
        self.editor = NoteEditor(self.mediator, self.bookmarks)
        self.initialize()
        # Purge stale rows when the process exits
        atexit.register(self._shutdown)
        self._register_tools()

    def initialize(self) -> None:
        """Initialize services."""
        logger.info(f"Notesync MCP server initialized for {self.mediator.notes_dir}")

    def _shutdown(self) -> None:
        """Run the exit cleanup; never raise during interpreter shutdown."""
        try:
            self.indexer.shutdown_cleanup()
        except Exception as e:
            logger.warning(f"Shutdown cleanup failed: {e}")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NotesyncError):
            # Structured domain errors - use the error code and message
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            # Log full detail but return generic ref to avoid leaking internals
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            # File system errors - don't expose paths or detailed error messages
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            # Unexpected errors - log with full stack trace but return generic message
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _note_path(self, path: str) -> Path:
        """Resolve a tool path argument against the notes root."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.mediator.notes_dir / candidate
        if not self.mediator.is_note(candidate):
            raise ValidationError(
                f"{candidate.name} is not a note under the notes directory",
                field="path",
                code=ErrorCode.OUTSIDE_NOTES_DIR,
            )
        return candidate

    def _apply_renames(self) -> str:
        lines = []
        for outcome in self.mediator.run_deferred():
            if outcome.renamed:
                lines.append(f"Renamed to {outcome.plan.new_filename}")
            elif outcome.error:
                lines.append(f"Rename to {outcome.plan.new_filename} skipped: {outcome.error}")
        return "\n".join(lines)

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="notes_sync")
        def notes_sync(path: str) -> str:
            """Synchronize one note file with its header and the index.
            Args:
                path: Note path, absolute or relative to the notes directory
            """
            with timed_operation("notes_sync", path=Path(path).name) as op:
                try:
                    result = self.mediator.sync_note(self._note_path(path))
                    op["status"] = result.status.value
                    renames = self._apply_renames()
                    return _describe(result) + (f"\n{renames}" if renames else "")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="notes_create")
        def notes_create(text: str) -> str:
            """Create a new note. The first line becomes its title.
            Args:
                text: Note body; the first line is the title
            """
            with timed_operation("notes_create") as op:
                try:
                    _validate_text(text)
                    result = self.editor.create_note(text)
                    op["note_id"] = result.note_id
                    return f"Note created: {_describe(result)}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="notes_delete")
        def notes_delete(path: str) -> str:
            """Remove a note from the index (the file is left alone).
            Args:
                path: Note path, absolute or relative to the notes directory
            """
            with timed_operation("notes_delete", path=Path(path).name):
                try:
                    removed = self.mediator.delete_note(self._note_path(path))
                    if removed:
                        return f"Removed {Path(path).name} from the index"
                    return f"{Path(path).name} was not indexed"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="notes_find")
        def notes_find(query: str = "", level: Optional[int] = None, limit: int = 20) -> str:
            """Find headings by heading text or note title.
            Args:
                query: Text to look for (case-insensitive substring)
                level: Only headings of this level (1-6)
                limit: Maximum number of results
            """
            with timed_operation("notes_find", query=query[:30]) as op:
                try:
                    results = self.mirror.find_by_title_or_heading(query, level, limit)
                    op["result_count"] = len(results)
                    if not results:
                        return f"No headings found for '{query}'"
                    output = f"Found {len(results)} headings:\n\n"
                    for r in results:
                        output += f"- {'#' * r.level} {r.heading} ({r.path.name}:{r.line})\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="notes_headings")
        def notes_headings(path: str) -> str:
            """List the headings of a note, last first.
            Args:
                path: Note path, absolute or relative to the notes directory
            """
            try:
                headings = self.editor.list_headings(self._note_path(path))
                if not headings:
                    return f"No headings in {Path(path).name}"
                return "\n".join(
                    f"{h.index}. {'#' * h.level} {h.text} (line {h.line})" for h in headings
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_insert")
        def notes_insert(
            path: str, text: str, heading_index: int = 1, prepend: bool = False
        ) -> str:
            """Insert text under a heading of a note.
            Args:
                path: Note path, absolute or relative to the notes directory
                text: Text to insert
                heading_index: 1-based heading to insert under
                prepend: Insert right below the heading instead of at the section end
            """
            with timed_operation("notes_insert", path=Path(path).name):
                try:
                    _validate_text(text)
                    result = self.editor.insert_text(
                        self._note_path(path), text, heading_index, prepend
                    )
                    if result is None:
                        return "Nothing to insert"
                    renames = self._apply_renames()
                    return f"Inserted at line {result.line} of {result.path.name}" + (
                        f"\n{renames}" if renames else ""
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="notes_capture")
        def notes_capture(text: str, bookmark: Optional[int] = None) -> str:
            """Capture text into the inbox, or under a bookmarked heading.
            Args:
                text: Text to capture
                bookmark: Bookmark number to capture under (optional)
            """
            with timed_operation("notes_capture"):
                try:
                    _validate_text(text)
                    if bookmark is None:
                        result = self.editor.insert_into_inbox(text)
                    else:
                        result = self.editor.insert_at_bookmark(bookmark, text)
                    if result is None:
                        return "Nothing to capture"
                    self._apply_renames()
                    return f"Captured into {result.path.name} at line {result.line}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="notes_undo")
        def notes_undo() -> str:
            """Revert the last insertion."""
            try:
                restored = self.editor.undo()
                if restored is None:
                    return "Nothing to undo"
                return f"Reverted changes to {restored.name}"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_reindex")
        async def notes_reindex() -> str:
            """Re-scan the notes directory and bring the index up to date."""
            with timed_operation("notes_reindex") as op:
                try:
                    summary = await self.indexer.index_all()
                    op.update(summary.to_dict())
                    return (
                        f"Indexed {summary.scanned} files: {summary.synced} synced, "
                        f"{summary.unchanged} unchanged, {summary.failed} failed, "
                        f"{summary.removed} stale rows removed, {summary.renamed} renamed"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="notes_bookmark_add")
        def notes_bookmark_add(number: int, path: str, line: int = 1) -> str:
            """Bookmark the heading that owns a line of a note.
            Args:
                number: Bookmark number (replaces any existing one)
                path: Note path, absolute or relative to the notes directory
                line: 1-based line inside the heading's section
            """
            try:
                record = self.bookmarks.add(number, self._note_path(path), line)
                return f"Bookmark {record.number} set on '{record.heading_text}'"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_bookmark_remove")
        def notes_bookmark_remove(number: int) -> str:
            """Remove a bookmark.
            Args:
                number: Bookmark number
            """
            try:
                if self.bookmarks.remove(number):
                    return f"Bookmark {number} removed"
                return f"Bookmark {number} not found"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_bookmark_list")
        def notes_bookmark_list() -> str:
            """List bookmarks with their notes and headings."""
            try:
                views = self.bookmarks.list()
                if not views:
                    return "No bookmarks found"
                return "\n".join(
                    f"{v.number}. {v.note_title or v.filename} ({v.heading_text})"
                    for v in views
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_bookmark_go")
        def notes_bookmark_go(number: int) -> str:
            """Resolve a bookmark to a file position.
            Args:
                number: Bookmark number
            """
            try:
                note, heading = self.bookmarks.resolve(number)
                path = self.mediator.notes_dir / note.filename
                return f"{path}:{heading.line} ({heading.text})"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_status")
        def notes_status() -> str:
            """Show index counts, pending renames and operation metrics."""
            try:
                summary = metrics.get_summary()
                output = "# Notesync Status\n\n"
                output += f"**Notes directory:** {self.mediator.notes_dir}\n"
                output += f"**Indexed notes:** {self.mirror.count_notes()}\n"
                output += f"**Bookmarks:** {len(self.bookmarks.list())}\n"
                output += f"**Pending renames:** {len(self.mediator.pending_renames)}\n"
                output += (
                    f"**Operations:** {summary['total_operations']} "
                    f"({summary['total_errors']} errors)\n"
                )
                for name, m in sorted(metrics.get_metrics().items()):
                    output += (
                        f"  - {name}: {m['count']} calls, "
                        f"avg {m['avg_duration_ms']}ms\n"
                    )
                return output
            except Exception as e:
                return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
