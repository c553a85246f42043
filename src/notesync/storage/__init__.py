"""Storage layer for the notesync engine."""

from notesync.storage.markdown_parser import OutlineExtractor
from notesync.storage.mirror import NoteMirror

__all__ = [
    "OutlineExtractor",
    "NoteMirror",
]
