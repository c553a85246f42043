"""Tests for canonical filenames and rename execution."""
import pytest

from notesync.exceptions import StorageError
from notesync.models.schema import NoteRecord, RenamePlan
from notesync.services.rename_resolver import RenameResolver
from notesync.surfaces import SurfaceRegistry


class TestCanonicalNames:
    """Tests for slug and filename derivation."""

    def setup_method(self):
        self.resolver = RenameResolver(empty_slug="untitled", extension=".md")

    def test_canonical_filename(self):
        name = self.resolver.canonical_filename("20240101000000", "My First Note!!")
        assert name == "20240101000000-my-first-note.md"

    def test_empty_slug(self):
        """A title that sanitizes to nothing uses the placeholder slug."""
        assert self.resolver.canonical_filename("1", "!!!") == "1-untitled.md"

    def test_plan_when_canonical(self, tmp_path):
        path = tmp_path / "20240101000000-hello.md"
        assert self.resolver.plan_rename("20240101000000", path, "Hello") is None

    def test_plan_without_title(self, tmp_path):
        assert self.resolver.plan_rename("1", tmp_path / "x.md", None) is None

    def test_plan(self, tmp_path):
        plan = self.resolver.plan_rename("1", tmp_path / "x.md", "New Title")
        assert plan.old_path == tmp_path / "x.md"
        assert plan.new_path == tmp_path / "1-new-title.md"
        assert plan.new_filename == "1-new-title.md"


class TestRenameExecution:
    """Tests for RenameResolver.execute against mirror and surfaces."""

    def _setup(self, mirror, notes_dir):
        old = notes_dir / "draft.md"
        old.write_text("---\nid: 1\n---\n# Title\n", encoding="utf-8")
        mirror.sync_note(
            NoteRecord(id="1", filename="draft.md", title="Title", hash="h",
                       created="c", updated="u"),
            [],
        )
        plan = RenamePlan(note_id="1", old_path=old, new_path=notes_dir / "1-title.md")
        return old, plan

    def test_execute(self, mirror, notes_dir):
        """File, mirror row and open surface all move together."""
        old, plan = self._setup(mirror, notes_dir)
        surfaces = SurfaceRegistry()
        buffer = surfaces.open(old)
        buffer.cursor = (3, 2)

        outcome = RenameResolver().execute(plan, mirror, surfaces)

        assert outcome.renamed and outcome.retargeted
        assert not old.exists()
        assert plan.new_path.exists()
        assert mirror.get_note("1").filename == "1-title.md"
        moved = surfaces.get(plan.new_path)
        assert moved is buffer
        assert moved.cursor == (3, 2)
        assert surfaces.get(old) is None

    def test_target_exists(self, mirror, notes_dir):
        """An existing different target aborts without touching anything."""
        old, plan = self._setup(mirror, notes_dir)
        plan.new_path.write_text("other", encoding="utf-8")
        with pytest.raises(StorageError):
            RenameResolver().execute(plan, mirror)
        assert old.exists()
        assert mirror.get_note("1").filename == "draft.md"

    def test_source_missing(self, mirror, notes_dir):
        old, plan = self._setup(mirror, notes_dir)
        old.unlink()
        outcome = RenameResolver().execute(plan, mirror)
        assert not outcome.renamed
        assert mirror.get_note("1").filename == "draft.md"

    def test_disk_failure_reverts_mirror(self, mirror, notes_dir, monkeypatch):
        old, plan = self._setup(mirror, notes_dir)

        def failing_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("notesync.services.rename_resolver.os.replace", failing_replace)
        with pytest.raises(StorageError):
            RenameResolver().execute(plan, mirror)
        assert mirror.get_note("1").filename == "draft.md"
        assert old.exists()
