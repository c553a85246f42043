"""Common test fixtures for the notesync engine."""

import tempfile
from pathlib import Path

import pytest

from notesync.config import config
from notesync.models.db_models import init_db
from notesync.observability import metrics
from notesync.services.bookmark_service import BookmarkService
from notesync.services.editor import NoteEditor
from notesync.services.indexer import NoteIndexer
from notesync.services.mediator import SyncMediator
from notesync.storage.markdown_parser import OutlineExtractor
from notesync.storage.mirror import NoteMirror

OLD_STAMP = "2020-01-01T00:00:00Z"


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_dirs():
    """Create temporary directories for notes and database."""
    with tempfile.TemporaryDirectory() as notes_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(notes_dir).resolve(), Path(db_dir).resolve()


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    notes_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "notes_dir", notes_dir)
    monkeypatch.setattr(config, "database_path", db_dir / "test_notes.db")
    monkeypatch.setattr(config, "inbox_note", "inbox.md")
    monkeypatch.setattr(config, "extra_special_notes", [])
    monkeypatch.setattr(config, "empty_slug", "untitled")
    monkeypatch.setattr(config, "index_batch_size", 5)
    yield config


@pytest.fixture
def notes_dir(test_config):
    return test_config.get_notes_dir()


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep metrics from leaking between tests."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def engine(test_config):
    """Private in-memory mirror database."""
    engine = init_db(in_memory=True)
    yield engine
    engine.dispose()


@pytest.fixture
def extractor():
    return OutlineExtractor()


@pytest.fixture
def mirror(engine, notes_dir):
    return NoteMirror(engine=engine, notes_dir=notes_dir)


@pytest.fixture
def mediator(mirror, notes_dir, extractor):
    return SyncMediator(mirror, notes_dir=notes_dir, extractor=extractor)


@pytest.fixture
def bookmarks(mirror, extractor, notes_dir):
    return BookmarkService(mirror, extractor, notes_dir)


@pytest.fixture
def editor(mediator, bookmarks):
    return NoteEditor(mediator, bookmarks)


@pytest.fixture
def indexer(mediator):
    return NoteIndexer(mediator)


@pytest.fixture
def make_note(notes_dir):
    """Factory writing a note file, with a complete header by default."""

    def _make(name, body, note_id="20240101000000", created=OLD_STAMP,
              updated=OLD_STAMP, header=True):
        path = notes_dir / name
        text = body
        if header:
            text = (
                "---\n"
                f"id: {note_id}\n"
                f"created: {created}\n"
                f"updated: {updated}\n"
                "tags: []\n"
                "---\n"
                "\n"
            ) + body
        path.write_text(text, encoding="utf-8")
        return path

    return _make
