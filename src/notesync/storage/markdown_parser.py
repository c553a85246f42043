"""Outline extraction for markdown notes.

Turns raw note text into an Outline: the metadata map of the leading
``---`` block and the ordered list of ATX headings. Extraction is a pure
function of the input text; nothing here touches the mirror.
"""
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import frontmatter
import yaml

from notesync.exceptions import ErrorCode, ParserUnavailableError, StorageError
from notesync.models.schema import Heading, Outline
from notesync.utils import split_lines

logger = logging.getLogger(__name__)

_ATX_RE = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?[ \t]*$")
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_CLOSING_RE = re.compile(r"(?:^|[ \t]+)#+$")
# A top-level ``key: value`` line, for blocks YAML rejects
_KEY_LINE_RE = re.compile(r"^([^\s:#-][^:]*):(?:[ \t]+(.*)|[ \t]*)$")


class OutlineExtractor:
    """Parses note text into metadata and headings.

    Args:
        handler: python-frontmatter handler whose delimiter marks the
            metadata block. Passing None means no structural parser is
            configured, which is fatal.
    """

    def __init__(
        self, handler: Optional[frontmatter.YAMLHandler] = frontmatter.YAMLHandler()
    ) -> None:
        ensure_parser_available(handler)
        self._handler = handler
        self._delimiter = handler.START_DELIMITER

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(self, content: str) -> Outline:
        """Parse raw note content."""
        return self.extract_lines(split_lines(content))

    def extract_lines(self, lines: Sequence[str]) -> Outline:
        """Parse a buffer given as a list of lines (no newlines)."""
        block = self.find_block(lines)
        metadata: Dict[str, str] = {}
        if block:
            start, end = block
            metadata = self._parse_metadata(lines[start + 1:end])
        headings = self._parse_headings(lines, block)
        return Outline(
            metadata=metadata,
            headings=headings,
            block_start=block[0] if block else None,
            block_end=block[1] if block else None,
        )

    def extract_file(self, path: Path) -> Outline:
        """Read and parse a note file.

        Raises:
            StorageError: If the file cannot be read.
        """
        try:
            content = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(
                f"Failed to read note {Path(path).name}",
                operation="read",
                path=str(path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e
        return self.extract(content)

    def find_block(self, lines: Sequence[str]) -> Optional[Tuple[int, int]]:
        """Locate the metadata block as (open, close) 0-based line indexes.

        The block must open on the first non-blank line. An unterminated
        block counts as no block at all.
        """
        start = None
        for i, line in enumerate(lines):
            if line.strip():
                start = i
                break
        if start is None or not self.is_delimiter(lines[start]):
            return None
        for j in range(start + 1, len(lines)):
            if self.is_delimiter(lines[j]):
                return start, j
        return None

    def is_delimiter(self, line: str) -> bool:
        return line.rstrip() == self._delimiter

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_metadata(block_lines: Sequence[str]) -> Dict[str, str]:
        """Read top-level key/value spans of the block.

        Scalars yield their string value; sequences and mappings keep
        their literal source text so ``tags: [a, b]`` stays ``[a, b]``.
        """
        text = "\n".join(block_lines)
        if not text.strip():
            return {}
        try:
            root = yaml.compose(text, Loader=yaml.SafeLoader)
        except yaml.YAMLError as e:
            logger.warning(f"Metadata block is not valid YAML, reading it line by line: {e}")
            return OutlineExtractor._scan_metadata(block_lines)
        if not isinstance(root, yaml.MappingNode):
            return {}

        metadata: Dict[str, str] = {}
        for key_node, value_node in root.value:
            if not isinstance(key_node, yaml.ScalarNode):
                continue
            if isinstance(value_node, yaml.ScalarNode):
                value = value_node.value
            else:
                value = text[value_node.start_mark.index:value_node.end_mark.index]
            metadata[str(key_node.value)] = value.strip()
        return metadata

    @staticmethod
    def _scan_metadata(block_lines: Sequence[str]) -> Dict[str, str]:
        """Read ``key: value`` lines without a YAML parser.

        One bad line (``subject: Re: budget``) must not hide the id and
        timestamps around it. A key with no inline value takes its
        indented continuation lines.
        """
        metadata: Dict[str, str] = {}
        key: Optional[str] = None
        for line in block_lines:
            match = _KEY_LINE_RE.match(line)
            if match:
                key = match.group(1).strip()
                value = (match.group(2) or "").strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
                    value = value[1:-1]
                metadata[key] = value
                continue
            if key is not None and line.strip() and line[:1] in " \t-":
                value = metadata[key]
                metadata[key] = f"{value}\n{line.strip()}" if value else line.strip()
        return metadata

    @staticmethod
    def _parse_headings(
        lines: Sequence[str], block: Optional[Tuple[int, int]]
    ) -> List[Heading]:
        headings: List[Heading] = []
        fence: Optional[str] = None
        skip_until = block[1] if block else -1

        for i, line in enumerate(lines):
            if i <= skip_until:
                continue
            fence_match = _FENCE_RE.match(line)
            if fence is not None:
                # A closing fence uses the same character, at least as long
                if fence_match and fence_match.group(1)[0] == fence[0] \
                        and len(fence_match.group(1)) >= len(fence) \
                        and not line.strip().lstrip(fence[0]):
                    fence = None
                continue
            if fence_match:
                fence = fence_match.group(1)
                continue

            match = _ATX_RE.match(line)
            if not match:
                continue
            text = _CLOSING_RE.sub("", (match.group(2) or "").strip())
            headings.append(
                Heading(
                    text=text.strip(),
                    level=len(match.group(1)),
                    line=i + 1,
                    index=len(headings) + 1,
                )
            )
        return headings


def ensure_parser_available(handler: Optional[frontmatter.YAMLHandler]) -> None:
    """Refuse to continue without a usable metadata handler.

    Raises:
        ParserUnavailableError: If the handler is missing or has no delimiter.
    """
    if handler is None or not getattr(handler, "START_DELIMITER", None):
        raise ParserUnavailableError(
            "No metadata parser configured; refusing to run because every "
            "note would look headerless and be rewritten",
            parser="frontmatter",
        )
    if not callable(getattr(yaml, "compose", None)):
        raise ParserUnavailableError(
            "PyYAML does not provide compose()", parser="yaml"
        )


def title_of(outline: Outline) -> Optional[str]:
    """Text of the first level-1 heading, if any."""
    return outline.title


def heading_index_at(outline: Outline, line: int) -> int:
    """Index of the last heading starting at or above ``line`` (1-based).

    Falls back to 1 when the line sits above every heading.
    """
    current = 1
    for heading in outline.headings:
        if line >= heading.line:
            current = heading.index
        else:
            break
    return current
