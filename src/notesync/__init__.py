"""
notesync - keeps a directory of markdown notes in step with a relational index.

Each note is a plain markdown file with a ``---`` metadata header and a list
of headings. The synchronization engine normalizes headers, keeps filenames in
line with note titles and mirrors notes, headings and bookmarks into SQLite.

This version uses synchronous pipelines with an anyio-driven startup indexer.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notesync")
except PackageNotFoundError:
    __version__ = "0.1.0"
