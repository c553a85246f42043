"""Header normalization and text formatting for notes.

The normalizer owns four header keys (``id``, ``created``, ``updated``,
``tags``). Everything else in the metadata block belongs to the user and
is carried through a rewrite line for line.
"""
import datetime
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from notesync.models.schema import (CANONICAL_KEYS, EMPTY_TAGS, SPECIAL_KEYS,
                                    NormalizeResult, NoteMetadata, NoteRecord,
                                    Outline, format_timestamp, generate_note_id)
from notesync.storage.markdown_parser import OutlineExtractor

logger = logging.getLogger(__name__)

UNTITLED = "Untitled note"

# A top-level ``key:`` line inside the metadata block
_KEY_RE = re.compile(r"^([^\s:#-][^:]*):(?:[ \t]|$)")
_H1_RE = re.compile(r"^\s*#\s")
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_ID_PREFIX_RE = re.compile(r"^\d+-")

BlockEntry = Tuple[Optional[str], List[str]]


def format_text(lines: Sequence[str]) -> List[str]:
    """Tidy a buffer before it is saved.

    Puts a blank line after every level-1 heading outside code fences and
    collapses trailing blank lines into one final empty line.
    """
    result = list(lines)
    fence: Optional[str] = None
    i = 0
    while i < len(result) - 1:
        line = result[i]
        fence_match = _FENCE_RE.match(line)
        if fence_match:
            marker = fence_match.group(1)
            if fence is None:
                fence = marker
            elif marker[0] == fence[0] and len(marker) >= len(fence) \
                    and not line.strip().lstrip(fence[0]):
                fence = None
        elif fence is None and _H1_RE.match(line) and result[i + 1] != "":
            result.insert(i + 1, "")
            i += 1
        i += 1

    while result and result[-1] == "":
        result.pop()
    result.append("")
    return result


def title_from_filename(filename: str) -> str:
    """Derive a display title from a note filename.

    ``20240101000000-reading-list.md`` becomes ``Reading list``.
    """
    name = _ID_PREFIX_RE.sub("", Path(filename).stem, count=1)
    if not name:
        return UNTITLED
    name = name.replace("-", " ")
    return name[:1].upper() + name[1:]


def header_key(line: str) -> Optional[str]:
    """Top-level key a metadata line starts, if any."""
    match = _KEY_RE.match(line)
    return match.group(1).strip() if match else None


def block_entries(block_lines: Sequence[str]) -> List[BlockEntry]:
    """Group metadata block lines by the top-level key that owns them.

    Continuation lines (block sequences, nested maps) stay with their key.
    Lines before the first key form an entry with key None.
    """
    entries: List[BlockEntry] = []
    for line in block_lines:
        key = header_key(line)
        if key:
            entries.append((key, [line]))
        elif entries:
            entries[-1][1].append(line)
        else:
            entries.append((None, [line]))
    return entries


class MetadataNormalizer:
    """Rewrites metadata blocks into canonical shape.

    Args:
        extractor: Used to re-read the buffer for title insertion.
    """

    def __init__(self, extractor: Optional[OutlineExtractor] = None):
        self.extractor = extractor or OutlineExtractor()

    def metadata_of(self, lines: Sequence[str], outline: Outline) -> NoteMetadata:
        """Typed view of the metadata block of a buffer."""
        extras: List[Tuple[str, str]] = []
        for key, entry_lines in self._entries(lines, outline):
            if key in CANONICAL_KEYS:
                continue
            extras.extend((key or "", line) for line in entry_lines)
        meta = outline.metadata
        return NoteMetadata(
            id=meta.get("id") or None,
            created=meta.get("created") or None,
            updated=meta.get("updated") or None,
            tags=meta.get("tags") or None,
            extras=extras,
        )

    def normalize(
        self,
        lines: Sequence[str],
        outline: Outline,
        is_special: bool,
        force: bool = False,
        stored: Optional[NoteRecord] = None,
        now: Optional[datetime.datetime] = None,
    ) -> Optional[NormalizeResult]:
        """Bring the metadata block into canonical shape.

        Args:
            lines: Buffer lines the outline was extracted from.
            outline: Outline of ``lines``.
            is_special: Special notes carry only ``created``/``updated``.
            force: Rewrite even if the header looks complete, moving
                ``updated`` to now.
            stored: Mirror row of this note, if any.
            now: Clock override.

        Returns:
            The rewritten buffer, or None when nothing needs to change.
        """
        header = self.metadata_of(lines, outline)

        if not force and header.required_present(is_special):
            if stored is None or (
                stored.created == header.created and stored.updated == header.updated
            ):
                return None

        now_str = format_timestamp(now)
        note_id = None
        if not is_special:
            # An id already assigned to this file survives a lost header
            note_id = header.id or (stored.id if stored else None) or generate_note_id(now)
        created = header.created or (stored.created if stored else None) or now_str
        if force:
            updated = now_str
        else:
            updated = header.updated or (stored.updated if stored else None) or now_str
        tags = None if is_special else (header.tags or EMPTY_TAGS)

        same_values = (
            header.created == created
            and header.updated == updated
            and (is_special or (header.id == note_id and header.tags == tags))
        )
        if same_values and self._is_canonical(lines, outline, is_special):
            return None

        new_lines = self._render(lines, outline, is_special, note_id, created, updated, tags)
        logger.debug(
            f"Normalized header (id={note_id}, updated={updated}, force={force})"
        )
        return NormalizeResult(
            lines=new_lines, id=note_id, created=created, updated=updated
        )

    def ensure_title(
        self, lines: Sequence[str], filename: str, outline: Optional[Outline] = None
    ) -> Tuple[List[str], str]:
        """Make sure a regular note has a level-1 heading.

        A missing title is derived from the filename and inserted after the
        metadata block, padded with blank lines.

        Returns:
            The (possibly extended) lines and the title text.
        """
        outline = outline or self.extractor.extract_lines(lines)
        result = list(lines)
        if outline.title is not None:
            return result, outline.title

        title = title_from_filename(filename)
        heading_line = f"# {title}"
        if outline.has_block:
            at = outline.block_end + 1
            result[at:at] = ["", heading_line]
            if at + 2 >= len(result) or result[at + 2] != "":
                result.insert(at + 2, "")
        else:
            result.insert(0, heading_line)
            if len(result) < 2 or result[1] != "":
                result.insert(1, "")
        logger.debug(f"Inserted missing title '{title}' into {filename}")
        return result, title

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _entries(lines: Sequence[str], outline: Outline) -> List[BlockEntry]:
        if not outline.has_block:
            return []
        return block_entries(lines[outline.block_start + 1:outline.block_end])

    def _is_canonical(
        self, lines: Sequence[str], outline: Outline, is_special: bool
    ) -> bool:
        """Check the block opens the file with owned keys first, in order."""
        if not outline.has_block or outline.block_start != 0:
            return False
        required = list(SPECIAL_KEYS if is_special else CANONICAL_KEYS)
        keys = [key for key, _ in self._entries(lines, outline)]
        if keys[:len(required)] != required:
            return False
        return not any(key in CANONICAL_KEYS for key in keys[len(required):])

    def _render(
        self,
        lines: Sequence[str],
        outline: Outline,
        is_special: bool,
        note_id: Optional[str],
        created: str,
        updated: str,
        tags: Optional[str],
    ) -> List[str]:
        entries = self._entries(lines, outline)

        block = ["---"]
        if not is_special:
            block.append(f"id: {note_id}")
        block.append(f"created: {created}")
        block.append(f"updated: {updated}")
        if not is_special:
            # Keep the user's own tags text, block lists included
            tag_lines = next(
                (entry for key, entry in entries if key == "tags"), None
            )
            if tag_lines and outline.metadata.get("tags"):
                block.extend(tag_lines)
            else:
                block.append(f"tags: {tags}")
        for key, entry_lines in entries:
            if key not in CANONICAL_KEYS:
                block.extend(entry_lines)
        block.append("---")

        if not outline.has_block:
            return block + [""] + list(lines)
        return block + list(lines[outline.block_end + 1:])
