"""Operation API over the bookmark tree.

Every mutating function returns a ``Result`` holding a new ``Root``.  Only
the ancestors of the changed node are rebuilt; untouched siblings are the
same objects as in the input.  All rebuilt ancestors get the same
``last_modified`` timestamp.  When nothing changes the input root is
returned as-is.

Expected failures (unknown names, duplicates, invalid input) come back as
``Result`` failures carrying a ``ValidationError``; nothing here raises for
them.

Removals tombstone; renames and moves tombstone the old node and add a new
one, because names (and ``(url, title)`` for bookmarks) are the identity the
merge engine matches on.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Sequence, TypeVar

from ..errors import ValidationError
from ..result import Result, failure, success
from ..validators import (
    validate_name,
    validate_notes,
    validate_tags,
    validate_title,
    validate_url,
)
from .metadata import (
    compare_bookmarks_content,
    fresh_metadata,
    fresh_root_metadata,
    mark_deleted,
    touch,
)
from .models import (
    Bookmark,
    BookmarkFilter,
    BookmarkInput,
    BookmarkKey,
    BookmarkSearchResult,
    BookmarkStats,
    BookmarkUpdate,
    Bundle,
    Category,
    Root,
    now_utc,
)

logger = logging.getLogger(__name__)

N = TypeVar("N", Category, Bundle)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _invalid(message: str) -> Result:
    return failure(ValidationError(message))


def _index_by_name(
    nodes: Sequence[N], name: str, *, active: bool
) -> int | None:
    for i, node in enumerate(nodes):
        if node.name == name and (not active or not node.is_deleted):
            return i
    return None


def _index_by_key(
    bookmarks: Sequence[Bookmark], key: BookmarkKey, *, active: bool
) -> int | None:
    for i, bookmark in enumerate(bookmarks):
        if bookmark.key == key and (not active or not bookmark.is_deleted):
            return i
    return None


def _index_by_id(bookmarks: Sequence[Bookmark], bookmark_id: str) -> int | None:
    for i, bookmark in enumerate(bookmarks):
        if bookmark.id == bookmark_id and not bookmark.is_deleted:
            return i
    return None


def _put(nodes: tuple, index: int | None, node) -> tuple:
    """Replace ``nodes[index]`` with *node*, or append when index is None."""
    if index is None:
        return nodes + (node,)
    return nodes[:index] + (node,) + nodes[index + 1 :]


def _insert_after(nodes: tuple, index: int, node, *, drop: int | None) -> tuple:
    """Insert *node* right after ``nodes[index]``, removing ``nodes[drop]``."""
    items = list(nodes)
    items.insert(index + 1, node)
    if drop is not None:
        items.pop(drop if drop <= index else drop + 1)
    return tuple(items)


def _carry_bundle(bundle: Bundle, timestamp: datetime) -> Bundle:
    """Copy of *bundle* with only active bookmarks, all restamped."""
    return Bundle(
        name=bundle.name,
        bookmarks=tuple(
            b.model_copy(update={"metadata": fresh_metadata(timestamp)})
            for b in bundle.active_bookmarks
        ),
        metadata=fresh_metadata(timestamp),
    )


def _carry_category(category: Category, timestamp: datetime) -> Category:
    return Category(
        name=category.name,
        bundles=tuple(
            _carry_bundle(b, timestamp) for b in category.active_bundles
        ),
        metadata=fresh_metadata(timestamp),
    )


def _with_categories(
    root: Root, categories: tuple, timestamp: datetime
) -> Root:
    return root.model_copy(
        update={
            "categories": categories,
            "metadata": fresh_root_metadata(timestamp),
        }
    )


def _update_category(
    root: Root,
    category_name: str,
    transform: Callable[[Category], Result[Category]],
    timestamp: datetime,
) -> Result[Root]:
    """Path-copy helper: apply *transform* to one active category."""
    index = _index_by_name(root.categories, category_name, active=True)
    if index is None:
        return _invalid(f"Category '{category_name}' not found")

    category = root.categories[index]
    result = transform(category)
    if not result.success:
        return result
    if result.data is category:
        return success(root)

    updated = touch(result.data, timestamp)
    return success(
        _with_categories(
            root, _put(root.categories, index, updated), timestamp
        )
    )


def _update_bundle(
    root: Root,
    category_name: str,
    bundle_name: str,
    transform: Callable[[Bundle], Result[Bundle]],
    timestamp: datetime,
) -> Result[Root]:
    """Path-copy helper: apply *transform* to one active bundle."""

    def _in_category(category: Category) -> Result[Category]:
        index = _index_by_name(category.bundles, bundle_name, active=True)
        if index is None:
            return _invalid(
                f"Bundle '{bundle_name}' not found in category "
                f"'{category_name}'"
            )
        bundle = category.bundles[index]
        result = transform(bundle)
        if not result.success:
            return result
        if result.data is bundle:
            return success(category)
        updated = touch(result.data, timestamp)
        return success(
            category.model_copy(
                update={"bundles": _put(category.bundles, index, updated)}
            )
        )

    return _update_category(root, category_name, _in_category, timestamp)


def _check_bookmark_fields(
    title: str, url: str, notes: str | None, tags: Iterable[str]
) -> str | None:
    for is_valid, message in (
        validate_title(title),
        validate_url(url),
        validate_notes(notes),
        validate_tags(tags),
    ):
        if not is_valid:
            return message
    return None


def _clean_notes(notes: str | None) -> str | None:
    # Blank notes are not written to Markdown, so they read back as None.
    return notes.strip() or None if notes else None


def _new_bookmark(data: BookmarkInput, timestamp: datetime) -> Bookmark:
    return Bookmark(
        title=data.title.strip(),
        url=data.url.strip(),
        notes=_clean_notes(data.notes),
        tags=data.tags,
        metadata=fresh_metadata(timestamp),
    )


def _place_bookmark(
    bookmarks: tuple, bookmark: Bookmark
) -> tuple[tuple, str | None]:
    """Add *bookmark*, reusing the slot of a tombstone with the same key."""
    if _index_by_key(bookmarks, bookmark.key, active=True) is not None:
        return bookmarks, f"Bookmark {bookmark.key} already exists"
    index = _index_by_key(bookmarks, bookmark.key, active=False)
    return _put(bookmarks, index, bookmark), None


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


def create_root(timestamp: datetime | None = None) -> Root:
    """Return an empty collection."""
    return Root(metadata=fresh_root_metadata(timestamp))


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def add_category(
    root: Root, name: str, *, timestamp: datetime | None = None
) -> Result[Root]:
    is_valid, message = validate_name(name, "Category name")
    if not is_valid:
        return _invalid(message)
    name = name.strip()
    if _index_by_name(root.categories, name, active=True) is not None:
        return _invalid(f"Category '{name}' already exists")

    ts = timestamp or now_utc()
    category = Category(name=name, metadata=fresh_metadata(ts))
    index = _index_by_name(root.categories, name, active=False)
    logger.debug("Adding category %r", name)
    return success(
        _with_categories(root, _put(root.categories, index, category), ts)
    )


def remove_category(
    root: Root, name: str, *, timestamp: datetime | None = None
) -> Result[Root]:
    index = _index_by_name(root.categories, name, active=True)
    if index is None:
        return _invalid(f"Category '{name}' not found")

    ts = timestamp or now_utc()
    tombstone = mark_deleted(root.categories[index], ts)
    logger.debug("Removing category %r", name)
    return success(
        _with_categories(root, _put(root.categories, index, tombstone), ts)
    )


def rename_category(
    root: Root,
    old_name: str,
    new_name: str,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    is_valid, message = validate_name(new_name, "Category name")
    if not is_valid:
        return _invalid(message)
    new_name = new_name.strip()

    index = _index_by_name(root.categories, old_name, active=True)
    if index is None:
        return _invalid(f"Category '{old_name}' not found")
    if new_name == old_name:
        return success(root)
    if _index_by_name(root.categories, new_name, active=True) is not None:
        return _invalid(f"Category '{new_name}' already exists")

    ts = timestamp or now_utc()
    old = root.categories[index]
    renamed = _carry_category(old, ts).model_copy(update={"name": new_name})
    categories = _put(root.categories, index, mark_deleted(old, ts))
    categories = _insert_after(
        categories,
        index,
        renamed,
        drop=_index_by_name(root.categories, new_name, active=False),
    )
    logger.debug("Renaming category %r -> %r", old_name, new_name)
    return success(_with_categories(root, categories, ts))


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


def add_bundle(
    root: Root,
    category_name: str,
    name: str,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    is_valid, message = validate_name(name, "Bundle name")
    if not is_valid:
        return _invalid(message)
    name = name.strip()
    ts = timestamp or now_utc()

    def _add(category: Category) -> Result[Category]:
        if _index_by_name(category.bundles, name, active=True) is not None:
            return _invalid(
                f"Bundle '{name}' already exists in category "
                f"'{category_name}'"
            )
        index = _index_by_name(category.bundles, name, active=False)
        bundle = Bundle(name=name, metadata=fresh_metadata(ts))
        return success(
            category.model_copy(
                update={"bundles": _put(category.bundles, index, bundle)}
            )
        )

    return _update_category(root, category_name, _add, ts)


def remove_bundle(
    root: Root,
    category_name: str,
    name: str,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    ts = timestamp or now_utc()

    def _remove(category: Category) -> Result[Category]:
        index = _index_by_name(category.bundles, name, active=True)
        if index is None:
            return _invalid(
                f"Bundle '{name}' not found in category '{category_name}'"
            )
        tombstone = mark_deleted(category.bundles[index], ts)
        return success(
            category.model_copy(
                update={"bundles": _put(category.bundles, index, tombstone)}
            )
        )

    return _update_category(root, category_name, _remove, ts)


def rename_bundle(
    root: Root,
    category_name: str,
    old_name: str,
    new_name: str,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    is_valid, message = validate_name(new_name, "Bundle name")
    if not is_valid:
        return _invalid(message)
    new_name = new_name.strip()
    ts = timestamp or now_utc()

    def _rename(category: Category) -> Result[Category]:
        index = _index_by_name(category.bundles, old_name, active=True)
        if index is None:
            return _invalid(
                f"Bundle '{old_name}' not found in category "
                f"'{category_name}'"
            )
        if new_name == old_name:
            return success(category)
        if _index_by_name(category.bundles, new_name, active=True) is not None:
            return _invalid(
                f"Bundle '{new_name}' already exists in category "
                f"'{category_name}'"
            )
        old = category.bundles[index]
        renamed = _carry_bundle(old, ts).model_copy(
            update={"name": new_name}
        )
        bundles = _put(category.bundles, index, mark_deleted(old, ts))
        bundles = _insert_after(
            bundles,
            index,
            renamed,
            drop=_index_by_name(category.bundles, new_name, active=False),
        )
        return success(category.model_copy(update={"bundles": bundles}))

    return _update_category(root, category_name, _rename, ts)


def move_bundle(
    root: Root,
    from_category: str,
    to_category: str,
    bundle_name: str,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    """Move a bundle (with its active bookmarks) to another category."""
    source_index = _index_by_name(root.categories, from_category, active=True)
    if source_index is None:
        return _invalid(f"Source category '{from_category}' not found")
    target_index = _index_by_name(root.categories, to_category, active=True)
    if target_index is None:
        return _invalid(f"Target category '{to_category}' not found")

    source = root.categories[source_index]
    bundle_index = _index_by_name(source.bundles, bundle_name, active=True)
    if bundle_index is None:
        return _invalid(
            f"Bundle '{bundle_name}' not found in category '{from_category}'"
        )
    if from_category == to_category:
        return success(root)

    target = root.categories[target_index]
    if _index_by_name(target.bundles, bundle_name, active=True) is not None:
        return _invalid(
            f"Bundle '{bundle_name}' already exists in category "
            f"'{to_category}'"
        )

    ts = timestamp or now_utc()
    moved = _carry_bundle(source.bundles[bundle_index], ts)

    removed = remove_bundle(root, from_category, bundle_name, timestamp=ts)
    if not removed.success:
        return removed

    def _add(category: Category) -> Result[Category]:
        index = _index_by_name(category.bundles, bundle_name, active=False)
        return success(
            category.model_copy(
                update={"bundles": _put(category.bundles, index, moved)}
            )
        )

    logger.debug(
        "Moving bundle %r from %r to %r",
        bundle_name,
        from_category,
        to_category,
    )
    return _update_category(removed.data, to_category, _add, ts)


# ---------------------------------------------------------------------------
# Bookmarks
# ---------------------------------------------------------------------------


def add_bookmark(
    root: Root,
    category_name: str,
    bundle_name: str,
    data: BookmarkInput,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    return add_bookmarks_batch(
        root, category_name, bundle_name, [data], timestamp=timestamp
    )


def add_bookmarks_batch(
    root: Root,
    category_name: str,
    bundle_name: str,
    items: Sequence[BookmarkInput],
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    """Add several bookmarks to one bundle in a single change.

    Either all bookmarks are added or none is.
    """
    for data in items:
        problem = _check_bookmark_fields(
            data.title, data.url, data.notes, data.tags
        )
        if problem:
            return _invalid(problem)
    if not items:
        return success(root)

    ts = timestamp or now_utc()

    def _add(bundle: Bundle) -> Result[Bundle]:
        bookmarks = bundle.bookmarks
        for data in items:
            bookmarks, problem = _place_bookmark(
                bookmarks, _new_bookmark(data, ts)
            )
            if problem:
                return _invalid(f"{problem} in bundle '{bundle_name}'")
        return success(bundle.model_copy(update={"bookmarks": bookmarks}))

    return _update_bundle(root, category_name, bundle_name, _add, ts)


def update_bookmark(
    root: Root,
    category_name: str,
    bundle_name: str,
    bookmark_id: str,
    changes: BookmarkUpdate,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    """Apply the fields explicitly set on *changes* to one bookmark."""
    ts = timestamp or now_utc()
    fields = changes.model_fields_set

    def _update(bundle: Bundle) -> Result[Bundle]:
        index = _index_by_id(bundle.bookmarks, bookmark_id)
        if index is None:
            return _invalid(
                f"Bookmark '{bookmark_id}' not found in bundle "
                f"'{bundle_name}'"
            )
        current = bundle.bookmarks[index]
        title = (
            changes.title.strip()
            if "title" in fields and changes.title is not None
            else current.title
        )
        url = (
            changes.url.strip()
            if "url" in fields and changes.url is not None
            else current.url
        )
        notes = _clean_notes(changes.notes) if "notes" in fields else current.notes
        tags = (
            changes.tags
            if "tags" in fields and changes.tags is not None
            else current.tags
        )
        problem = _check_bookmark_fields(title, url, notes, tags)
        if problem:
            return _invalid(problem)

        updated = Bookmark(
            id=current.id,
            title=title,
            url=url,
            notes=notes,
            tags=tags,
            metadata=current.metadata,
        )
        if compare_bookmarks_content(updated, current):
            return success(bundle)

        bookmarks = bundle.bookmarks
        if updated.key != current.key:
            clash = _index_by_key(bookmarks, updated.key, active=False)
            if clash is not None:
                if not bookmarks[clash].is_deleted:
                    return _invalid(f"Bookmark {updated.key} already exists")
                # A tombstone with the new key is superseded by this edit.
                bookmarks = bookmarks[:clash] + bookmarks[clash + 1 :]
                index = _index_by_id(bookmarks, bookmark_id)
        bookmarks = _put(bookmarks, index, touch(updated, ts))
        return success(bundle.model_copy(update={"bookmarks": bookmarks}))

    return _update_bundle(root, category_name, bundle_name, _update, ts)


def remove_bookmark(
    root: Root,
    category_name: str,
    bundle_name: str,
    bookmark_id: str,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    ts = timestamp or now_utc()

    def _remove(bundle: Bundle) -> Result[Bundle]:
        index = _index_by_id(bundle.bookmarks, bookmark_id)
        if index is None:
            return _invalid(
                f"Bookmark '{bookmark_id}' not found in bundle "
                f"'{bundle_name}'"
            )
        tombstone = mark_deleted(bundle.bookmarks[index], ts)
        return success(
            bundle.model_copy(
                update={"bookmarks": _put(bundle.bookmarks, index, tombstone)}
            )
        )

    return _update_bundle(root, category_name, bundle_name, _remove, ts)


def move_bookmark(
    root: Root,
    from_category: str,
    from_bundle: str,
    to_category: str,
    to_bundle: str,
    bookmark_id: str,
    *,
    timestamp: datetime | None = None,
) -> Result[Root]:
    """Move a bookmark to another bundle, possibly in another category."""
    source = find_bookmark(root, from_category, from_bundle, bookmark_id)
    if source is None:
        return _invalid(
            f"Bookmark '{bookmark_id}' not found in "
            f"'{from_category}/{from_bundle}'"
        )
    target_category = _index_by_name(root.categories, to_category, active=True)
    if target_category is None:
        return _invalid(f"Target category '{to_category}' not found")
    target = root.categories[target_category]
    target_bundle = _index_by_name(target.bundles, to_bundle, active=True)
    if target_bundle is None:
        return _invalid(
            f"Target bundle '{to_bundle}' not found in category "
            f"'{to_category}'"
        )
    if (from_category, from_bundle) == (to_category, to_bundle):
        return success(root)
    if (
        _index_by_key(
            target.bundles[target_bundle].bookmarks, source.key, active=True
        )
        is not None
    ):
        return _invalid(
            f"Bookmark {source.key} already exists in "
            f"'{to_category}/{to_bundle}'"
        )

    ts = timestamp or now_utc()
    removed = remove_bookmark(
        root, from_category, from_bundle, bookmark_id, timestamp=ts
    )
    if not removed.success:
        return removed

    moved = source.model_copy(update={"metadata": fresh_metadata(ts)})

    def _add(bundle: Bundle) -> Result[Bundle]:
        bookmarks, problem = _place_bookmark(bundle.bookmarks, moved)
        if problem:
            return _invalid(problem)
        return success(bundle.model_copy(update={"bookmarks": bookmarks}))

    return _update_bundle(removed.data, to_category, to_bundle, _add, ts)


def find_bookmark(
    root: Root, category_name: str, bundle_name: str, bookmark_id: str
) -> Bookmark | None:
    """Return the active bookmark with *bookmark_id*, or ``None``."""
    ci = _index_by_name(root.categories, category_name, active=True)
    if ci is None:
        return None
    category = root.categories[ci]
    bi = _index_by_name(category.bundles, bundle_name, active=True)
    if bi is None:
        return None
    bundle = category.bundles[bi]
    index = _index_by_id(bundle.bookmarks, bookmark_id)
    return None if index is None else bundle.bookmarks[index]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _matches(bookmark: Bookmark, criteria: BookmarkFilter) -> bool:
    lowered_tags = [t.lower() for t in bookmark.tags]
    if criteria.tags:
        if not lowered_tags:
            return False
        for wanted in criteria.tags:
            needle = wanted.lower()
            if not any(needle in tag for tag in lowered_tags):
                return False

    if criteria.search_term:
        term = criteria.search_term.lower()
        haystacks = [
            bookmark.title.lower(),
            bookmark.url.lower(),
            (bookmark.notes or "").lower(),
            *lowered_tags,
        ]
        if not any(term in h for h in haystacks):
            return False

    return True


def search_bookmarks(
    root: Root, criteria: BookmarkFilter | None = None
) -> list[BookmarkSearchResult]:
    """Case-insensitive search over active bookmarks.

    ``search_term`` matches title, URL, notes or any tag by substring.
    Every entry in ``tags`` must match (by substring) at least one tag.
    ``category_name`` and ``bundle_name`` restrict by exact name.
    """
    criteria = criteria or BookmarkFilter()
    results: list[BookmarkSearchResult] = []
    for category in root.active_categories:
        if criteria.category_name and category.name != criteria.category_name:
            continue
        for bundle in category.active_bundles:
            if criteria.bundle_name and bundle.name != criteria.bundle_name:
                continue
            for bookmark in bundle.active_bookmarks:
                if _matches(bookmark, criteria):
                    results.append(
                        BookmarkSearchResult(
                            bookmark=bookmark,
                            category_name=category.name,
                            bundle_name=bundle.name,
                        )
                    )
    return results


def get_stats(root: Root) -> BookmarkStats:
    """Count active categories, bundles, bookmarks and distinct tags."""
    bundles = 0
    bookmarks = 0
    tags: set[str] = set()
    categories = root.active_categories
    for category in categories:
        for bundle in category.active_bundles:
            bundles += 1
            for bookmark in bundle.active_bookmarks:
                bookmarks += 1
                tags.update(t.lower() for t in bookmark.tags)
    return BookmarkStats(
        categories_count=len(categories),
        bundles_count=bundles,
        bookmarks_count=bookmarks,
        tags_count=len(tags),
    )
