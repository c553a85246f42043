"""Tests for the synchronization mediator."""
import os
import re
from unittest.mock import MagicMock

import pytest

from notesync.events import EventKind
from notesync.exceptions import IdentifierMissingError, StorageError
from notesync.models.schema import NormalizeResult, PipelineState, SyncStatus
from notesync.utils import split_lines

OLD_STAMP = "2020-01-01T00:00:00Z"


def _header_value(path, key):
    for line in path.read_text(encoding="utf-8").splitlines():
        if line.startswith(f"{key}: "):
            return line[len(key) + 2:]
    return None


class TestSyncNote:
    """Tests for syncing notes from disk."""

    def test_headerless_note(self, mediator, mirror, notes_dir):
        """A bare note gets a header; its title lands on line 8."""
        path = notes_dir / "hello.md"
        path.write_text("# Hello\nWorld\n", encoding="utf-8")

        result = mediator.sync_note(path)

        assert result.status == SyncStatus.SYNCED
        assert result.written
        assert re.fullmatch(r"\d{14}", result.note_id)
        lines = split_lines(path.read_text(encoding="utf-8"))
        assert lines[0] == "---"
        assert lines[1] == f"id: {result.note_id}"
        assert lines[5:9] == ["---", "", "# Hello", "World"]

        record = mirror.get_note(result.note_id)
        assert record.filename == "hello.md"
        assert record.title == "Hello"
        assert record.hash == result.hash
        assert mirror.get_headings(result.note_id)[0].line == 8

    def test_idempotent(self, mediator, notes_dir):
        """A second sync of an unchanged file writes nothing."""
        path = notes_dir / "hello.md"
        path.write_text("# Hello\nWorld\n", encoding="utf-8")
        mediator.sync_note(path)
        before = path.read_bytes()

        result = mediator.sync_note(path)

        assert result.status == SyncStatus.UNCHANGED
        assert not result.written
        assert path.read_bytes() == before

    def test_complete_header_not_rewritten(self, mediator, make_note):
        path = make_note("20240101000000-kept.md", "# Kept\n")
        before = path.read_bytes()
        result = mediator.sync_note(path)
        assert result.status == SyncStatus.SYNCED
        assert not result.written
        assert result.rename is None
        assert path.read_bytes() == before

    def test_external_edit_moves_updated(self, mediator, mirror, make_note):
        path = make_note("20240101000000-kept.md", "# Kept\n")
        mediator.sync_note(path)
        path.write_text(path.read_text(encoding="utf-8") + "more\n", encoding="utf-8")

        result = mediator.sync_note(path)

        assert result.status == SyncStatus.SYNCED
        assert _header_value(path, "updated") != OLD_STAMP
        assert mirror.get_note("20240101000000").hash == result.hash

    def test_special_note_not_mirrored(self, mediator, mirror, notes_dir):
        """Special notes get created/updated only and stay out of the mirror."""
        path = notes_dir / "inbox.md"
        path.write_text("# Inbox\n- item\n", encoding="utf-8")

        result = mediator.sync_note(path)

        assert result.status == SyncStatus.NORMALIZED
        text = path.read_text(encoding="utf-8")
        assert "created: " in text
        assert "id: " not in text
        assert "tags: " not in text
        assert mirror.count_notes() == 0

    def test_outside_notes_dir(self, mediator, temp_dirs):
        _, other_dir = temp_dirs
        path = other_dir / "stray.md"
        path.write_text("# Stray\n", encoding="utf-8")
        result = mediator.sync_note(path)
        assert result.status == SyncStatus.SKIPPED_OUTSIDE
        assert path.read_text(encoding="utf-8") == "# Stray\n"

    def test_write_failure_aborts(self, mediator, mirror, notes_dir, monkeypatch):
        """A failed write leaves the mirror untouched and the file idle."""
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")

        def failing_write(target, content):
            raise OSError("read-only filesystem")

        monkeypatch.setattr("notesync.services.mediator.atomic_write", failing_write)
        with pytest.raises(StorageError):
            mediator.sync_note(path)
        assert mirror.count_notes() == 0
        assert not mediator.is_busy(path)
        assert mediator.context(path).state == PipelineState.IDLE

    def test_unreadable_file(self, mediator, notes_dir):
        path = notes_dir / "binary.md"
        path.write_bytes(b"\xff\xfe\x00")
        with pytest.raises(StorageError):
            mediator.sync_note(path)


class TestMissingId:
    """Tests for notes whose buffer ends up without an id."""

    def test_invalid_yaml_header_keeps_identity(self, mediator, mirror, notes_dir):
        """A header line YAML rejects does not cost the note its id."""
        path = notes_dir / "budget.md"
        path.write_text(
            "---\n"
            "id: 20230101000000\n"
            "created: 2023-01-01T00:00:00Z\n"
            "updated: 2023-01-01T00:00:00Z\n"
            "subject: Re: budget\n"
            "---\n"
            "\n"
            "# Budget\n",
            encoding="utf-8",
        )

        result = mediator.sync_note(path)

        assert result.status == SyncStatus.SYNCED
        assert result.note_id == "20230101000000"
        text = path.read_text(encoding="utf-8")
        assert "id: 20230101000000" in text
        assert "created: 2023-01-01T00:00:00Z" in text
        assert "subject: Re: budget" in text
        assert mirror.get_note("20230101000000").created == "2023-01-01T00:00:00Z"

    def test_id_repaired_before_write(self, mediator, mirror, notes_dir, monkeypatch):
        """A normalization that drops the id is redone once, forced, before writing."""
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        real_normalize = mediator.normalizer.normalize
        forced = []

        def drops_id_first(lines, outline, is_special, force=False, stored=None, now=None):
            forced.append(force)
            if len(forced) == 1:
                return NormalizeResult(
                    lines=list(lines), created=OLD_STAMP, updated=OLD_STAMP
                )
            return real_normalize(
                lines, outline, is_special, force=force, stored=stored, now=now
            )

        monkeypatch.setattr(mediator.normalizer, "normalize", drops_id_first)
        saved = []
        mediator.events.subscribe(lambda event: saved.append(event.kind))

        result = mediator.sync_note(path)

        assert forced == [False, True]
        assert saved == [EventKind.SAVED]
        assert result.status == SyncStatus.SYNCED
        assert _header_value(path, "id") == result.note_id
        assert mirror.get_note(result.note_id) is not None

    def test_second_failure_aborts_untouched(self, mediator, mirror, notes_dir, monkeypatch):
        """If the forced pass still has no id, nothing is written or mirrored."""
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")

        def never_assigns(lines, outline, is_special, force=False, stored=None, now=None):
            return NormalizeResult(lines=list(lines), created=OLD_STAMP, updated=OLD_STAMP)

        monkeypatch.setattr(mediator.normalizer, "normalize", never_assigns)
        saved = []
        mediator.events.subscribe(lambda event: saved.append(event.kind))

        with pytest.raises(IdentifierMissingError):
            mediator.sync_note(path)

        assert path.read_text(encoding="utf-8") == "# Hello\n"
        assert saved == []
        assert mirror.count_notes() == 0
        assert mediator.context(path).state == PipelineState.IDLE
        assert not mediator.is_busy(path)


class TestOnSave:
    """Tests for the save pipeline."""

    def test_save_formats_and_titles(self, mediator, notes_dir):
        path = notes_dir / "20240101000000-ideas.md"
        path.write_text("body\n", encoding="utf-8")

        result = mediator.on_save(path)

        assert result.title == "Ideas"
        lines = split_lines(path.read_text(encoding="utf-8"))
        assert lines[6:] == ["", "# Ideas", "", "body", ""]

    def test_save_is_idempotent(self, mediator, notes_dir):
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n\nWorld\n", encoding="utf-8")
        mediator.on_save(path)
        before = path.read_bytes()

        result = mediator.on_save(path)

        assert result.status == SyncStatus.UNCHANGED
        assert path.read_bytes() == before

    def test_save_with_changes_moves_updated(self, mediator, mirror, make_note):
        path = make_note("20240101000000-kept.md", "# Kept\n")
        mediator.sync_note(path)
        lines = split_lines(path.read_text(encoding="utf-8")) + ["new text"]

        result = mediator.on_save(path, lines)

        assert result.status == SyncStatus.SYNCED
        assert _header_value(path, "updated") != OLD_STAMP
        assert _header_value(path, "created") == OLD_STAMP
        assert mirror.get_note("20240101000000").updated != OLD_STAMP

    def test_save_uses_open_surface(self, mediator, notes_dir):
        """Unsaved buffer content wins over the file on disk."""
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        mediator.surfaces.edit(path, ["# Hello", "", "typed"])

        mediator.on_save(path)

        assert "typed" in path.read_text(encoding="utf-8")
        assert not mediator.surfaces.is_modified(path)

    def test_reentrant_event_is_dropped(self, mediator, notes_dir):
        """SAVED fired by the engine's own write does not restart the pipeline."""
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        seen = []
        mediator.events.subscribe(lambda event: seen.append(mediator.is_busy(event.path)))

        mediator.on_save(path)

        assert seen == [True]
        assert not mediator.is_busy(path)

    def test_busy_file_skipped(self, mediator, notes_dir):
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        mediator.context(path).updating_frontmatter = True

        result = mediator.on_save(path)

        assert result.status == SyncStatus.SKIPPED_REENTRANT
        assert path.read_text(encoding="utf-8") == "# Hello\n"

    def test_event_dispatch(self, mediator, notes_dir):
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        results = mediator.events.emit(EventKind.BEFORE_SAVE, path)
        assert results[0].status == SyncStatus.SYNCED


class TestExternalChanges:
    """Tests for on_open / on_focus mtime gating."""

    def test_not_newer_skips_hashing(self, mediator, make_note):
        path = make_note(
            "20240101000000-kept.md", "# Kept\n", updated="2099-01-01T00:00:00Z"
        )
        mediator.sync_note(path)
        mediator.detector.hash_file = MagicMock()

        result = mediator.on_focus(path)

        assert result.status == SyncStatus.NOT_NEWER
        mediator.detector.hash_file.assert_not_called()

    def test_newer_and_changed_resyncs(self, mediator, mirror, make_note):
        path = make_note("20240101000000-kept.md", "# Kept\n")
        mediator.sync_note(path)
        path.write_text(path.read_text(encoding="utf-8") + "\n## Added\n", encoding="utf-8")

        result = mediator.on_open(path)

        assert result.status == SyncStatus.SYNCED
        assert [h.text for h in mirror.get_headings("20240101000000")] == ["Kept", "Added"]
        assert mirror.get_note("20240101000000").hash == mediator.detector.hash_file(path)

    def test_newer_but_same_content(self, mediator, make_note):
        path = make_note("20240101000000-kept.md", "# Kept\n")
        mediator.sync_note(path)
        os.utime(path)
        assert mediator.on_focus(path).status == SyncStatus.UNCHANGED

    def test_tick_checks_like_focus(self, mediator, make_note):
        path = make_note("20240101000000-kept.md", "# Kept\n")
        mediator.sync_note(path)
        path.write_text(path.read_text(encoding="utf-8") + "tail\n", encoding="utf-8")
        results = mediator.events.emit(EventKind.TICK, path)
        assert results[0].status == SyncStatus.SYNCED

    def test_modified_surface_skipped(self, mediator, make_note):
        path = make_note("20240101000000-kept.md", "# Kept\n")
        mediator.surfaces.edit(path, ["# Kept", "unsaved"])
        assert mediator.on_focus(path).status == SyncStatus.SKIPPED_MODIFIED

    def test_unknown_note_is_synced(self, mediator, mirror, notes_dir):
        path = notes_dir / "new.md"
        path.write_text("# New\n", encoding="utf-8")
        assert mediator.on_open(path).status == SyncStatus.SYNCED
        assert mirror.count_notes() == 1

    def test_delete(self, mediator, mirror, make_note):
        path = make_note("20240101000000-kept.md", "# Kept\n")
        mediator.sync_note(path)
        assert not mediator.on_delete(path)
        path.unlink()
        assert mediator.on_delete(path)
        assert mirror.count_notes() == 0


class TestDeferredRenames:
    """Tests for the rename queue."""

    def test_rename_after_sync(self, mediator, mirror, notes_dir):
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        result = mediator.sync_note(path)

        # Nothing moves inside the pipeline run
        assert path.exists()
        assert [p.new_filename for p in mediator.pending_renames] == [
            f"{result.note_id}-hello.md"
        ]

        outcomes = mediator.run_deferred()

        assert outcomes[0].renamed
        new_path = notes_dir / f"{result.note_id}-hello.md"
        assert new_path.exists() and not path.exists()
        assert mirror.get_note(result.note_id).filename == new_path.name
        assert mediator.pending_renames == []

    def test_newer_plan_supersedes(self, mediator, notes_dir):
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        mediator.sync_note(path)
        mediator.on_save(path, ["# Goodbye"])

        plans = mediator.pending_renames
        assert len(plans) == 1
        assert plans[0].new_filename.endswith("-goodbye.md")

    def test_rename_failure_reported(self, mediator, notes_dir):
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        result = mediator.sync_note(path)
        (notes_dir / f"{result.note_id}-hello.md").write_text("taken", encoding="utf-8")

        outcomes = mediator.run_deferred()

        assert not outcomes[0].renamed
        assert outcomes[0].error
        assert path.exists()

    def test_surface_follows_rename(self, mediator, notes_dir):
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        buffer = mediator.surfaces.open(path)
        result = mediator.sync_note(path)
        mediator.run_deferred()
        assert buffer.path == notes_dir / f"{result.note_id}-hello.md"

    @pytest.mark.anyio
    async def test_on_save_async(self, mediator, notes_dir):
        path = notes_dir / "hello.md"
        path.write_text("# Hello\n", encoding="utf-8")
        result, outcomes = await mediator.on_save_async(path)
        assert result.status == SyncStatus.SYNCED
        assert outcomes[0].renamed
