"""Tests for outline extraction."""
import pytest

from notesync.exceptions import ParserUnavailableError, StorageError
from notesync.storage.markdown_parser import (OutlineExtractor,
                                              heading_index_at, title_of)

SAMPLE = (
    "---\n"
    "id: 20240101000000\n"
    "tags: [a, b]\n"
    "---\n"
    "# Title\n"
    "\n"
    "## Sub ##\n"
    "```\n"
    "# not a heading\n"
    "```\n"
    "### Third\n"
)


class TestOutlineExtractor:
    """Tests for OutlineExtractor."""

    def setup_method(self):
        self.extractor = OutlineExtractor()

    def test_metadata_and_headings(self):
        """Scalars are read as values, sequences keep their source text."""
        outline = self.extractor.extract(SAMPLE)
        assert outline.metadata == {"id": "20240101000000", "tags": "[a, b]"}
        assert outline.block_start == 0
        assert outline.block_end == 3
        assert [(h.text, h.level, h.line, h.index) for h in outline.headings] == [
            ("Title", 1, 5, 1),
            ("Sub", 2, 7, 2),
            ("Third", 3, 11, 3),
        ]
        assert outline.title == "Title"
        assert title_of(outline) == "Title"
        assert outline.note_id == "20240101000000"

    def test_no_block(self):
        """A note without a metadata block has an empty map."""
        outline = self.extractor.extract("# Hello\nWorld\n")
        assert outline.metadata == {}
        assert not outline.has_block
        assert outline.headings[0].line == 1

    def test_block_after_blank_lines(self):
        """The block may open on the first non-blank line."""
        outline = self.extractor.extract("\n\n---\nid: 1\n---\n# T\n")
        assert outline.block_start == 2
        assert outline.block_end == 4
        assert outline.metadata["id"] == "1"

    def test_unterminated_block(self):
        """An unterminated block is not a block."""
        outline = self.extractor.extract("---\nid: 1\n# T\n")
        assert not outline.has_block
        assert outline.metadata == {}
        assert [h.text for h in outline.headings] == ["T"]

    def test_block_not_first(self):
        """A delimiter after body text does not open a block."""
        outline = self.extractor.extract("text\n---\nid: 1\n---\n")
        assert not outline.has_block

    def test_malformed_yaml(self):
        """A block YAML rejects is read line by line, keeping the bounds."""
        outline = self.extractor.extract(
            "---\nid: 20230101000000\ncreated: '2023-01-01T00:00:00Z'\n"
            "subject: Re: budget\ntags:\n  - a\n---\n# T\n"
        )
        assert outline.has_block
        assert outline.note_id == "20230101000000"
        assert outline.metadata["created"] == "2023-01-01T00:00:00Z"
        assert outline.metadata["subject"] == "Re: budget"
        assert outline.metadata["tags"] == "- a"
        assert outline.title == "T"

    def test_malformed_yaml_without_keys(self):
        outline = self.extractor.extract("---\n: [\n---\n")
        assert outline.has_block
        assert outline.metadata == {}

    def test_block_list_value(self):
        """Block sequences keep their literal source span."""
        outline = self.extractor.extract("---\ntags:\n  - a\n  - b\n---\n")
        assert "- a" in outline.metadata["tags"]
        assert "- b" in outline.metadata["tags"]

    def test_heading_forms(self):
        """Empty headings, closing hashes and indented hashes."""
        outline = self.extractor.extract("#\n# A #\n#NoSpace\n   ## Indented\n")
        assert [(h.text, h.level) for h in outline.headings] == [
            ("", 1),
            ("A", 1),
            ("Indented", 2),
        ]

    def test_title_is_first_level_one(self):
        outline = self.extractor.extract("## Intro\n# Real Title\n# Second\n")
        assert outline.title == "Real Title"

    def test_extract_file_missing(self, tmp_path):
        """Unreadable files raise StorageError."""
        with pytest.raises(StorageError):
            self.extractor.extract_file(tmp_path / "missing.md")

    def test_parser_unavailable(self):
        """No handler means no structural parser, which is fatal."""
        with pytest.raises(ParserUnavailableError):
            OutlineExtractor(handler=None)


class TestHeadingIndexAt:
    """Tests for mapping a line to its owning heading."""

    def test_lines(self):
        outline = OutlineExtractor().extract(SAMPLE)
        assert heading_index_at(outline, 1) == 1
        assert heading_index_at(outline, 5) == 1
        assert heading_index_at(outline, 8) == 2
        assert heading_index_at(outline, 11) == 3
        assert heading_index_at(outline, 50) == 3
