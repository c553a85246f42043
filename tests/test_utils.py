"""Tests for utilities, notifications and editing surfaces."""
from pathlib import Path

from notesync.events import EventKind, NotificationSource
from notesync.exceptions import NoteNotFoundError
from notesync.surfaces import SurfaceRegistry
from notesync.utils import (atomic_write, escape_like_pattern, join_lines,
                            normalize_typography, slugify, split_lines)


class TestSlugify:
    """Tests for slugify."""

    def test_examples(self):
        assert slugify("My First Note!!") == "my-first-note"
        assert slugify("  Hub: Reading   list ") == "hub-reading-list"
        assert slugify("!!!") == ""
        assert slugify("") == ""

    def test_unicode_letters_kept(self):
        assert slugify("Café Notes") == "café-notes"


class TestTextHelpers:
    """Tests for typography and line helpers."""

    def test_normalize_typography(self):
        assert normalize_typography("it’s “fine” — ok") == "it's \"fine\" - ok"
        assert normalize_typography("done 🎉") == "done"

    def test_escape_like_pattern(self):
        assert escape_like_pattern("100% a_b") == "100\\% a\\_b"

    def test_lines_roundtrip(self):
        assert split_lines("a\r\nb\n") == ["a", "b"]
        assert join_lines(["a", "b"]) == "a\nb\n"
        assert split_lines("") == []

    def test_atomic_write(self, tmp_path):
        path = tmp_path / "n.md"
        atomic_write(path, "one\n")
        atomic_write(path, "two\n")
        assert path.read_text(encoding="utf-8") == "two\n"
        assert [p.name for p in tmp_path.iterdir()] == ["n.md"]


class TestNotificationSource:
    """Tests for NotificationSource."""

    def test_emit_and_unsubscribe(self):
        source = NotificationSource()
        seen = []
        unsubscribe = source.subscribe(lambda event: seen.append(event.kind))
        source.emit(EventKind.OPEN, Path("a.md"))
        unsubscribe()
        source.emit(EventKind.SAVED, Path("a.md"))
        assert seen == [EventKind.OPEN]

    def test_failing_handler_does_not_stop_delivery(self):
        source = NotificationSource()
        seen = []

        def failing(event):
            raise NoteNotFoundError("x")

        source.subscribe(failing)
        source.subscribe(lambda event: seen.append(event.path.name))
        results = source.emit(EventKind.FOCUS, Path("a.md"))
        assert seen == ["a.md"]
        assert isinstance(results[0], NoteNotFoundError)


class TestSurfaceRegistry:
    """Tests for SurfaceRegistry."""

    def test_edit_and_save(self, tmp_path):
        path = tmp_path / "a.md"
        surfaces = SurfaceRegistry()
        buffer = surfaces.edit(path, ["one", "two"])
        buffer.cursor = (2, 3)
        assert surfaces.is_modified(path)
        surfaces.mark_saved(path, ["one"])
        assert not surfaces.is_modified(path)
        # Cursor clamps into the shorter buffer
        assert buffer.cursor == (1, 3)

    def test_retarget_keeps_view(self, tmp_path):
        surfaces = SurfaceRegistry()
        buffer = surfaces.open(tmp_path / "old.md", ["x"])
        buffer.view = {"topline": 4}
        assert surfaces.retarget(tmp_path / "old.md", tmp_path / "new.md")
        assert surfaces.get(tmp_path / "new.md").view == {"topline": 4}
        assert surfaces.get(tmp_path / "old.md") is None
        assert not surfaces.retarget(tmp_path / "missing.md", tmp_path / "x.md")
