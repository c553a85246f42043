"""File-change notifications delivered to the synchronization engine."""
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List

from pydantic import BaseModel

from notesync.exceptions import NotesyncError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of file events an editor integration reports."""
    OPEN = "open"
    BEFORE_SAVE = "before_save"
    SAVED = "saved"
    FOCUS = "focus"
    DELETE = "delete"
    # Periodic idle check of an open note
    TICK = "tick"


class FileEvent(BaseModel):
    """A single notification about a file."""
    kind: EventKind
    path: Path


Handler = Callable[[FileEvent], Any]


class NotificationSource:
    """Synchronous fan-out of file events to subscribed handlers.

    Handlers run in subscription order on the emitting thread. A handler
    failing with a NotesyncError is logged and does not stop delivery to
    the others.
    """

    def __init__(self) -> None:
        self._handlers: List[Handler] = []

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def emit(self, kind: EventKind, path: Path) -> List[Any]:
        """Deliver an event and collect handler results."""
        event = FileEvent(kind=kind, path=Path(path))
        results = []
        for handler in list(self._handlers):
            try:
                results.append(handler(event))
            except NotesyncError as e:
                logger.error(f"Handler failed for {kind.value} {event.path.name}: {e}")
                results.append(e)
        return results
