"""Timestamp helpers, content comparators and metadata transforms.

Content comparison ignores ``id`` and every metadata field except the
tombstone flag.  Children are compared as multisets keyed by content, so
sibling order never makes two trees differ.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Union

from .models import (
    EPOCH,
    Bookmark,
    Bundle,
    Category,
    NodeMetadata,
    Root,
    RootMetadata,
    now_utc,
)

Node = Union[Root, Category, Bundle, Bookmark]

__all__ = [
    "EPOCH",
    "now_utc",
    "is_newer_than",
    "parse_timestamp",
    "format_timestamp",
    "compare_bookmarks_content",
    "compare_bundles_content",
    "compare_categories_content",
    "compare_roots_content",
    "mark_deleted",
    "stamp_last_synced",
    "latest_modified",
    "touch",
]


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def is_newer_than(a: datetime, b: datetime) -> bool:
    """Return ``True`` if *a* is strictly after *b*."""
    return a > b


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 string into a UTC datetime.

    Accepts a trailing ``Z``.  Naive values are taken to be UTC.

    Raises:
        ValueError: If *value* is not ISO 8601.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    millis = value.microsecond // 1000
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{millis:03d}Z"


# ---------------------------------------------------------------------------
# Content equality
# ---------------------------------------------------------------------------


def _bookmark_signature(bookmark: Bookmark) -> tuple:
    return (
        bookmark.url,
        bookmark.title,
        bookmark.notes or "",
        frozenset(bookmark.tags),
        bookmark.is_deleted,
    )


def _bundle_signature(bundle: Bundle) -> tuple:
    children = Counter(_bookmark_signature(b) for b in bundle.bookmarks)
    return (bundle.name, bundle.is_deleted, frozenset(children.items()))


def _category_signature(category: Category) -> tuple:
    children = Counter(_bundle_signature(b) for b in category.bundles)
    return (
        category.name,
        category.is_deleted,
        frozenset(children.items()),
    )


def _root_signature(root: Root) -> frozenset:
    return frozenset(
        Counter(_category_signature(c) for c in root.categories).items()
    )


def compare_bookmarks_content(a: Bookmark, b: Bookmark) -> bool:
    return _bookmark_signature(a) == _bookmark_signature(b)


def compare_bundles_content(a: Bundle, b: Bundle) -> bool:
    return _bundle_signature(a) == _bundle_signature(b)


def compare_categories_content(a: Category, b: Category) -> bool:
    return _category_signature(a) == _category_signature(b)


def compare_roots_content(a: Root, b: Root) -> bool:
    return _root_signature(a) == _root_signature(b)


# ---------------------------------------------------------------------------
# Metadata transforms
# ---------------------------------------------------------------------------


def touch(node, timestamp: datetime):
    """Return *node* with ``last_modified`` set to *timestamp*."""
    return node.model_copy(
        update={
            "metadata": node.metadata.model_copy(
                update={"last_modified": timestamp}
            )
        }
    )


def _tombstone(metadata: NodeMetadata, timestamp: datetime) -> NodeMetadata:
    return metadata.model_copy(
        update={"is_deleted": True, "last_modified": timestamp}
    )


def mark_deleted(node, timestamp: datetime):
    """Tombstone *node*.  Categories and bundles tombstone their subtree.

    Descendants that are already tombstoned keep their original deletion
    time.
    """
    if isinstance(node, Category):
        return node.model_copy(
            update={
                "bundles": tuple(
                    b if b.is_deleted else mark_deleted(b, timestamp)
                    for b in node.bundles
                ),
                "metadata": _tombstone(node.metadata, timestamp),
            }
        )
    if isinstance(node, Bundle):
        return node.model_copy(
            update={
                "bookmarks": tuple(
                    b if b.is_deleted else mark_deleted(b, timestamp)
                    for b in node.bookmarks
                ),
                "metadata": _tombstone(node.metadata, timestamp),
            }
        )
    if isinstance(node, Bookmark):
        return node.model_copy(
            update={"metadata": _tombstone(node.metadata, timestamp)}
        )
    raise TypeError(f"Cannot tombstone {type(node).__name__}")


def _synced(node, timestamp: datetime):
    return node.metadata.model_copy(update={"last_synced": timestamp})


def stamp_last_synced(root: Root, timestamp: datetime) -> Root:
    """Set ``last_synced`` on every category, bundle and bookmark."""
    categories = []
    for category in root.categories:
        bundles = []
        for bundle in category.bundles:
            bookmarks = tuple(
                b.model_copy(update={"metadata": _synced(b, timestamp)})
                for b in bundle.bookmarks
            )
            bundles.append(
                bundle.model_copy(
                    update={
                        "bookmarks": bookmarks,
                        "metadata": _synced(bundle, timestamp),
                    }
                )
            )
        categories.append(
            category.model_copy(
                update={
                    "bundles": tuple(bundles),
                    "metadata": _synced(category, timestamp),
                }
            )
        )
    return root.model_copy(update={"categories": tuple(categories)})


def latest_modified(node: Node) -> datetime:
    """Newest ``last_modified`` anywhere in the subtree rooted at *node*."""
    latest = node.metadata.last_modified
    if isinstance(node, Root):
        children = node.categories
    elif isinstance(node, Category):
        children = node.bundles
    elif isinstance(node, Bundle):
        children = node.bookmarks
    else:
        return latest
    for child in children:
        latest = max(latest, latest_modified(child))
    return latest


def fresh_root_metadata(timestamp: datetime | None = None) -> RootMetadata:
    return RootMetadata(last_modified=timestamp or now_utc())


def fresh_metadata(
    timestamp: datetime | None = None, last_synced: datetime = EPOCH
) -> NodeMetadata:
    return NodeMetadata(
        last_modified=timestamp or now_utc(), last_synced=last_synced
    )
