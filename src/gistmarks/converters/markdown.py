"""Markdown codec for the bookmark tree.

Format::

    # Category

    ## Bundle

    - [Title](https://example.com)
      - tags: one, two
      - notes: free text

Only active nodes are written.  Timestamps, ids and tombstones never
reach the text; decoded nodes get fresh ids and carry the timestamp the
caller supplies (the gist revision time) as ``last_modified``.

Decoding also accepts files written by older clients: a leading YAML
front matter block, ``<!-- ... -->`` comment lines and the folder/luggage
emoji prefixes on headings are skipped.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from ..errors import ParseError
from ..result import Result, failure, success
from ..tree.models import (
    EPOCH,
    Bookmark,
    Bundle,
    Category,
    NodeMetadata,
    Root,
    RootMetadata,
)
from ..validators import BUNDLE_EMOJI, CATEGORY_EMOJI, EMPTY_COLLECTION_NAME

logger = logging.getLogger(__name__)

EMPTY_HEADER = f"# {EMPTY_COLLECTION_NAME}"
EMPTY_HINT = "Your bookmark collection is empty. Start adding bookmarks!"

_BOOKMARK_RE = re.compile(r"^-\s*\[(.+?)\]\((.+?)\)$")
_TAGS_RE = re.compile(r"^-\s*tags:\s*(.*)$")
_NOTES_RE = re.compile(r"^-\s*notes:\s*(.*)$")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode(root: Root) -> str:
    """Render the active part of *root* as Markdown.

    An empty collection renders as a placeholder header and hint line,
    which ``decode`` maps back to an empty root.
    """
    categories = root.active_categories
    if not categories:
        return "\n".join([EMPTY_HEADER, "", EMPTY_HINT])

    lines: list[str] = []
    for category in categories:
        lines.append(f"# {category.name}")
        lines.append("")
        for bundle in category.active_bundles:
            lines.append(f"## {bundle.name}")
            lines.append("")
            for bookmark in bundle.active_bookmarks:
                lines.append(f"- [{bookmark.title}]({bookmark.url})")
                if bookmark.tags:
                    lines.append(f"  - tags: {', '.join(bookmark.tags)}")
                if bookmark.notes and bookmark.notes.strip():
                    lines.append(f"  - notes: {bookmark.notes}")
                lines.append("")
            lines.append("")

    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _skip_front_matter(lines: list[str]) -> int:
    """Return the index of the first line after a YAML front matter block."""
    if lines and lines[0].strip() == "---":
        for i in range(1, len(lines)):
            if lines[i].strip() == "---":
                return i + 1
    return 0


def _heading_name(text: str, marker: str, emoji: str) -> str:
    name = text[len(marker) :].strip()
    if name.startswith(emoji):
        name = name[len(emoji) :].strip()
    return name


def decode(text: str, timestamp: datetime = EPOCH) -> Root:
    """Parse bookmark Markdown into a ``Root``.

    Args:
        text: The Markdown document.
        timestamp: ``last_modified`` for every decoded node.

    Raises:
        ParseError: On structural errors (orphan bundle/bookmark/tags/notes,
            broken link bullet, duplicate heading among siblings).
    """
    lines = text.lstrip("\ufeff").replace("\r\n", "\n").split("\n")

    # Plain dict/list builders; frozen models are built once at the end.
    categories: list[dict] = []
    category: dict | None = None
    bundle: dict | None = None
    bookmark: dict | None = None

    for index in range(_skip_front_matter(lines), len(lines)):
        line_number = index + 1
        raw = lines[index]
        line = raw.strip()
        if not line or (line.startswith("<!--") and line.endswith("-->")):
            continue
        indented = raw[:1].isspace()

        if line.startswith("## ") and not indented:
            if category is None:
                raise ParseError(
                    "Bundle heading before any category", line_number, raw
                )
            name = _heading_name(line, "## ", BUNDLE_EMOJI)
            if not name:
                raise ParseError("Empty bundle name", line_number, raw)
            if any(b["name"] == name for b in category["bundles"]):
                raise ParseError(
                    f"Duplicate bundle '{name}'", line_number, raw
                )
            bundle = {"name": name, "bookmarks": []}
            category["bundles"].append(bundle)
            bookmark = None

        elif line.startswith("# ") and not indented:
            name = _heading_name(line, "# ", CATEGORY_EMOJI)
            if not name:
                raise ParseError("Empty category name", line_number, raw)
            if any(c["name"] == name for c in categories):
                raise ParseError(
                    f"Duplicate category '{name}'", line_number, raw
                )
            category = {"name": name, "bundles": []}
            categories.append(category)
            bundle = None
            bookmark = None

        elif indented and _TAGS_RE.match(line):
            if bookmark is None:
                raise ParseError("Tags without a bookmark", line_number, raw)
            values = _TAGS_RE.match(line).group(1)
            bookmark["tags"] = [t.strip() for t in values.split(",")]

        elif indented and _NOTES_RE.match(line):
            if bookmark is None:
                raise ParseError("Notes without a bookmark", line_number, raw)
            notes = _NOTES_RE.match(line).group(1).strip()
            bookmark["notes"] = notes or None

        elif line.startswith("- [") and not indented:
            match = _BOOKMARK_RE.match(line)
            if match is None:
                raise ParseError("Invalid bookmark link", line_number, raw)
            if bundle is None:
                raise ParseError(
                    "Bookmark before any bundle", line_number, raw
                )
            title, url = match.group(1).strip(), match.group(2).strip()
            bookmark = {"title": title, "url": url, "tags": [], "notes": None}
            if any(
                b["title"] == title and b["url"] == url
                for b in bundle["bookmarks"]
            ):
                # Its tags/notes lines still attach to the detached dict.
                logger.warning(
                    "Line %d: duplicate bookmark [%s](%s) dropped",
                    line_number,
                    title,
                    url,
                )
                continue
            bundle["bookmarks"].append(bookmark)

        # Anything else is prose and is ignored.

    return _build_root(categories, timestamp)


def _build_root(categories: list[dict], timestamp: datetime) -> Root:
    def meta() -> NodeMetadata:
        return NodeMetadata(last_modified=timestamp)

    built = []
    for cat in categories:
        if cat["name"] == EMPTY_COLLECTION_NAME and not cat["bundles"]:
            continue
        bundles = tuple(
            Bundle(
                name=b["name"],
                bookmarks=tuple(
                    Bookmark(
                        title=bm["title"],
                        url=bm["url"],
                        notes=bm["notes"],
                        tags=bm["tags"],
                        metadata=meta(),
                    )
                    for bm in b["bookmarks"]
                ),
                metadata=meta(),
            )
            for b in cat["bundles"]
        )
        built.append(Category(name=cat["name"], bundles=bundles, metadata=meta()))

    return Root(
        categories=tuple(built),
        metadata=RootMetadata(last_modified=timestamp),
    )


def decode_result(text: str, timestamp: datetime = EPOCH) -> Result[Root]:
    """``decode`` with ``ParseError`` returned as a ``Result`` failure."""
    try:
        return success(decode(text, timestamp))
    except ParseError as exc:
        logger.warning("Failed to parse bookmark Markdown: %s", exc)
        return failure(exc)
