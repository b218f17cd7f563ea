"""Tests for converters/markdown.py -- the bookmark Markdown codec.

Covers:
- encode() layout, empty collection placeholder, tombstones omitted
- decode() structure, timestamps, tags and notes
- Legacy input: front matter, comments, emoji headings, BOM, CRLF
- ParseError cases with line numbers
- Duplicate bookmarks dropped with a warning
- decode_result() wrapping
"""

import logging
from datetime import datetime, timezone

import pytest

from gistmarks.converters.markdown import (
    EMPTY_HEADER,
    EMPTY_HINT,
    decode,
    decode_result,
    encode,
)
from gistmarks.errors import ParseError
from gistmarks.tree import operations as ops
from gistmarks.tree.metadata import compare_roots_content
from gistmarks.tree.models import EPOCH, BookmarkInput

T0 = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)

SAMPLE = """\
# Work

## Q1

- [Docs](https://docs.example)
  - tags: ref, api
  - notes: read first

- [Board](https://board.example)


## Q2


# Home"""


def _sample_root():
    root = ops.create_root(T0)
    for step in (
        lambda r: ops.add_category(r, "Work", timestamp=T0),
        lambda r: ops.add_bundle(r, "Work", "Q1", timestamp=T0),
        lambda r: ops.add_bookmarks_batch(
            r,
            "Work",
            "Q1",
            [
                BookmarkInput(
                    title="Docs",
                    url="https://docs.example",
                    tags=["ref", "api"],
                    notes="read first",
                ),
                BookmarkInput(title="Board", url="https://board.example"),
            ],
            timestamp=T0,
        ),
        lambda r: ops.add_bundle(r, "Work", "Q2", timestamp=T0),
        lambda r: ops.add_category(r, "Home", timestamp=T0),
    ):
        root = step(root).unwrap()
    return root


# ---------------------------------------------------------------------------
# encode
# ---------------------------------------------------------------------------


class TestEncode:
    """Tests for encode()."""

    def test_layout(self):
        assert encode(_sample_root()) == SAMPLE

    def test_empty_collection_placeholder(self):
        assert encode(ops.create_root()) == f"{EMPTY_HEADER}\n\n{EMPTY_HINT}"

    def test_tombstones_not_written(self):
        root = _sample_root()
        docs = ops.search_bookmarks(root)[0].bookmark
        root = ops.remove_bookmark(root, "Work", "Q1", docs.id).unwrap()
        root = ops.remove_category(root, "Home").unwrap()

        text = encode(root)

        assert "Docs" not in text
        assert "# Home" not in text
        assert "- [Board](https://board.example)" in text

    def test_no_trailing_blank_lines(self):
        assert not encode(_sample_root()).endswith("\n")

    def test_only_deleted_categories_is_empty(self):
        root = ops.add_category(ops.create_root(), "Tmp").unwrap()
        root = ops.remove_category(root, "Tmp").unwrap()

        assert encode(root).startswith(EMPTY_HEADER)


# ---------------------------------------------------------------------------
# decode
# ---------------------------------------------------------------------------


class TestDecode:
    """Tests for decode()."""

    def test_structure(self):
        root = decode(SAMPLE)

        assert [c.name for c in root.categories] == ["Work", "Home"]
        work = root.categories[0]
        assert [b.name for b in work.bundles] == ["Q1", "Q2"]
        docs, board = work.bundles[0].bookmarks
        assert docs.title == "Docs"
        assert docs.url == "https://docs.example"
        assert docs.tags == ("ref", "api")
        assert docs.notes == "read first"
        assert board.tags == ()
        assert board.notes is None

    def test_round_trip_content(self):
        original = _sample_root()

        assert compare_roots_content(decode(encode(original)), original)

    def test_timestamp_applied_everywhere(self):
        root = decode(SAMPLE, T0)

        assert root.metadata.last_modified == T0
        for category in root.categories:
            assert category.metadata.last_modified == T0
            assert category.metadata.last_synced == EPOCH
            for bundle in category.bundles:
                for bookmark in bundle.bookmarks:
                    assert bookmark.metadata.last_modified == T0

    def test_fresh_ids(self):
        first = decode(SAMPLE).categories[0].bundles[0].bookmarks[0]
        second = decode(SAMPLE).categories[0].bundles[0].bookmarks[0]

        assert first.id != second.id

    def test_empty_placeholder_decodes_to_empty_root(self):
        assert decode(encode(ops.create_root())).categories == ()

    def test_empty_text(self):
        assert decode("").categories == ()

    def test_prose_ignored(self):
        text = "Intro paragraph\n# Work\nSome words\n## Q1\n- [A](https://a.example)"

        root = decode(text)

        assert len(root.categories[0].bundles[0].bookmarks) == 1

    def test_tags_trimmed_and_deduplicated(self):
        text = "# W\n## B\n- [A](https://a.example)\n  - tags:  x , y,x ,"

        (bookmark,) = decode(text).categories[0].bundles[0].bookmarks

        assert bookmark.tags == ("x", "y")

    def test_empty_notes_become_none(self):
        text = "# W\n## B\n- [A](https://a.example)\n  - notes:   "

        (bookmark,) = decode(text).categories[0].bundles[0].bookmarks

        assert bookmark.notes is None


class TestLegacyInput:
    """Files written by older clients."""

    def test_front_matter_skipped(self):
        text = "---\ntitle: bookmarks\n---\n# Work\n## Q1"

        assert [c.name for c in decode(text).categories] == ["Work"]

    def test_comments_skipped(self):
        text = "<!-- generated -->\n# Work\n<!-- bundle -->\n## Q1"

        assert decode(text).categories[0].bundles[0].name == "Q1"

    def test_emoji_headings(self):
        root = decode("# 📂 Work\n## 🧳 Q1\n- [A](https://a.example)")

        assert root.categories[0].name == "Work"
        assert root.categories[0].bundles[0].name == "Q1"

    def test_bom_and_crlf(self):
        root = decode("\ufeff# Work\r\n\r\n## Q1\r\n- [A](https://a.example)\r\n")

        assert root.categories[0].name == "Work"
        assert root.categories[0].bundles[0].bookmarks[0].url == "https://a.example"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestParseErrors:
    """Structural errors raise ParseError pointing at the line."""

    @pytest.mark.parametrize(
        "text, line_number, reason",
        [
            ("## Q1", 1, "Bundle heading before any category"),
            ("# 📂", 1, "Empty category name"),
            ("# W\n## 🧳", 2, "Empty bundle name"),
            ("# W\n\n# W", 3, "Duplicate category 'W'"),
            ("# W\n## B\n## B", 3, "Duplicate bundle 'B'"),
            ("# W\n## B\n  - tags: x", 3, "Tags without a bookmark"),
            ("# W\n## B\n  - notes: x", 3, "Notes without a bookmark"),
            ("# W\n## B\n- [broken", 3, "Invalid bookmark link"),
            ("# W\n- [A](https://a.example)", 2, "Bookmark before any bundle"),
        ],
    )
    def test_parse_error(self, text, line_number, reason):
        with pytest.raises(ParseError) as exc_info:
            decode(text)

        assert exc_info.value.line_number == line_number
        assert exc_info.value.reason == reason
        assert f"Line {line_number}" in str(exc_info.value)

    def test_duplicate_bookmark_dropped(self, caplog):
        text = (
            "# W\n## B\n- [A](https://a.example)\n"
            "- [A](https://a.example)\n  - tags: lost"
        )

        with caplog.at_level(logging.WARNING):
            root = decode(text)

        (bookmark,) = root.categories[0].bundles[0].bookmarks
        assert bookmark.tags == ()
        assert "duplicate bookmark" in caplog.text

    def test_decode_result_success(self):
        result = decode_result(SAMPLE, T0)

        assert result.success
        assert result.data.metadata.last_modified == T0

    def test_decode_result_failure(self):
        result = decode_result("## Orphan")

        assert not result.success
        assert isinstance(result.error, ParseError)
