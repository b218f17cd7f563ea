"""Three-way merge of bookmark trees.

``merge_roots(local, remote, last_synced)`` reconciles two trees level by
level (categories, bundles, bookmarks).  Nodes are matched by content key:
``NameKey`` for categories and bundles, ``BookmarkKey`` (url, title) for
bookmarks.  ``last_synced`` is the common reference point that separates
"changed since we last agreed" from "always different".

Per level:

1. Keys on both sides go through the deletion-then-content rule.
2. Local-only nodes are kept unless they are tombstones of something that
   was already synced.
3. Remote-only nodes are kept unless tombstoned.
4. Surviving containers are merged recursively.
5. A merged container keeps its local metadata unless its content changed;
   then ``last_modified`` becomes the newest timestamp among the local
   node, the remote node and the merged children.

Deletion-then-content rule for a key present on both sides:

* both tombstoned: dropped.
* one tombstoned: a deletion newer than ``last_synced`` wins.  Otherwise
  the strictly newer side wins and the active side wins a tie.
* both active: a user resolution wins if given.  Otherwise equal content
  keeps local, and differing content is decided by the strategy.  Under
  ``timestamp-based`` a tie is recorded as a ``MergeConflict`` and the
  local value is kept as a placeholder.

Within a bundle, an edited title or URL changes the bookmark key.  After
exact key matching, a local-only bookmark that existed at the last sync is
paired with a remote-only bookmark sharing its URL (then, failing that,
its title) when each side has exactly one candidate, so concurrent edits
meet in the rule above instead of producing duplicates.

The merge is pure: it never reads the clock, and identical inputs give
identical output.

``align_with_base`` and ``prune_remote_deletions`` prepare the inputs:
the first gives remote nodes that are unchanged since the last synced
snapshot the sync time instead of the gist revision time, the second
drops local nodes the remote deleted (by omission) that were not touched
locally since.

``generate_diff`` renders a unified diff for conflict display.
"""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Sequence, TypeVar

from ..errors import UnresolvedConflictsError
from ..tree.metadata import (
    compare_bookmarks_content,
    compare_bundles_content,
    compare_categories_content,
    compare_roots_content,
    latest_modified,
    touch,
)
from ..tree.models import (
    EPOCH,
    Bookmark,
    BookmarkKey,
    Bundle,
    Category,
    Root,
    RootMetadata,
)
from .models import (
    ConflictResolution,
    ConflictType,
    MergeConflict,
    MergeResult,
    MergeStrategy,
    Side,
)
from .resolver import ConflictResolver, create_resolver

logger = logging.getLogger(__name__)

K = TypeVar("K")
N = TypeVar("N", Category, Bundle, Bookmark)

_DROP = "drop"
_BOTH = "both"


# ---------------------------------------------------------------------------
# Merge context
# ---------------------------------------------------------------------------


@dataclass
class _MergeContext:
    last_synced: datetime
    resolutions: tuple[ConflictResolution, ...]
    resolver: ConflictResolver
    conflicts: list[MergeConflict] = field(default_factory=list)

    def resolution_for(
        self,
        kind: ConflictType,
        category_name: str,
        bundle_name: str | None = None,
        keys: Iterable[BookmarkKey] = (),
    ) -> Side | None:
        keys = tuple(keys)
        for res in self.resolutions:
            if res.type != kind or res.category_name != category_name:
                continue
            if kind == ConflictType.CATEGORY:
                return res.resolution
            if res.bundle_name != bundle_name:
                continue
            if kind == ConflictType.BUNDLE or res.bookmark_key in keys:
                return res.resolution
        return None


def _deletion_rule(local: N, remote: N, last_synced: datetime) -> str:
    """Return ``_DROP``, ``"local"``, ``"remote"`` or ``_BOTH`` (no tombstone)."""
    if local.is_deleted and remote.is_deleted:
        return _DROP
    if not local.is_deleted and not remote.is_deleted:
        return _BOTH

    if local.is_deleted:
        tomb, live, live_side = local, remote, "remote"
    else:
        tomb, live, live_side = remote, local, "local"

    deleted_at = tomb.metadata.last_modified
    if deleted_at > last_synced:
        return _DROP
    if deleted_at > live.metadata.last_modified:
        return _DROP
    # Stale deletion; the active side wins ties.
    return live_side


def _pick(side: Side, local: N, remote: N) -> N | None:
    chosen = local if side == "local" else remote
    return None if chosen.is_deleted else chosen


def _merge_keyed(
    local_nodes: Sequence[N],
    remote_nodes: Sequence[N],
    key: Callable[[N], K],
    merge_pair: Callable[[N, N], N | None],
    ctx: _MergeContext,
    pairs: dict | None = None,
) -> tuple[N, ...]:
    """Merge one level.  Output order: local order, then remote-only."""
    local_map = {key(n): n for n in local_nodes}
    remote_map = {key(n): n for n in remote_nodes}
    pairs = pairs or {}
    paired_remote = set(pairs.values())

    merged: list[N] = []
    for k, node in local_map.items():
        remote_key = k if k in remote_map else pairs.get(k)
        if remote_key is None:
            if ctx.last_synced == EPOCH or not node.is_deleted:
                merged.append(node)
            continue
        result = merge_pair(node, remote_map[remote_key])
        if result is not None:
            merged.append(result)

    for k, node in remote_map.items():
        if k in local_map or k in paired_remote:
            continue
        if not node.is_deleted:
            merged.append(node)

    return tuple(merged)


def _finish_container(
    base: N,
    local: N,
    remote: N,
    children_field: str,
    children: tuple,
    same_content: Callable[[N, N], bool],
) -> N:
    """Build the merged container; bump ``last_modified`` only on change."""
    candidate = base.model_copy(
        update={
            children_field: children,
            "metadata": base.metadata.model_copy(update={"is_deleted": False}),
        }
    )
    if same_content(candidate, local):
        return local
    bump = max(
        [local.metadata.last_modified, remote.metadata.last_modified]
        + [c.metadata.last_modified for c in children]
    )
    return touch(candidate, bump)


# ---------------------------------------------------------------------------
# Bookmarks
# ---------------------------------------------------------------------------


def _pair_edited_bookmarks(
    local_map: dict[BookmarkKey, Bookmark],
    remote_map: dict[BookmarkKey, Bookmark],
) -> dict[BookmarkKey, BookmarkKey]:
    """Pair local-only and remote-only bookmarks that are one node edited.

    Only local bookmarks that took part in a previous sync are candidates,
    so two fresh additions are never collapsed into one.
    """
    local_only = [
        b
        for k, b in local_map.items()
        if k not in remote_map
        and not b.is_deleted
        and b.metadata.last_synced != EPOCH
    ]
    remote_only = [
        b for k, b in remote_map.items() if k not in local_map and not b.is_deleted
    ]

    pairs: dict[BookmarkKey, BookmarkKey] = {}
    used: set[BookmarkKey] = set()
    for attr in ("url", "title"):
        for bookmark in local_only:
            if bookmark.key in pairs:
                continue
            value = getattr(bookmark, attr)
            local_candidates = [
                b
                for b in local_only
                if b.key not in pairs and getattr(b, attr) == value
            ]
            remote_candidates = [
                b
                for b in remote_only
                if b.key not in used and getattr(b, attr) == value
            ]
            if len(local_candidates) == 1 and len(remote_candidates) == 1:
                pairs[bookmark.key] = remote_candidates[0].key
                used.add(remote_candidates[0].key)
    return pairs


def _merge_bookmark_pair(
    local: Bookmark,
    remote: Bookmark,
    ctx: _MergeContext,
    category_name: str,
    bundle_name: str,
) -> Bookmark | None:
    choice = ctx.resolution_for(
        ConflictType.BOOKMARK,
        category_name,
        bundle_name,
        (local.key, remote.key),
    )
    if choice is not None:
        return _pick(choice, local, remote)

    outcome = _deletion_rule(local, remote, ctx.last_synced)
    if outcome == _DROP:
        return None
    if outcome != _BOTH:
        return local if outcome == "local" else remote

    if compare_bookmarks_content(local, remote):
        return local

    side = ctx.resolver.resolve(local, remote)
    if side is not None:
        return local if side == "local" else remote

    logger.info(
        "Conflict on %s/%s: %s vs %s",
        category_name,
        bundle_name,
        local.key,
        remote.key,
    )
    ctx.conflicts.append(
        MergeConflict(
            category_name=category_name,
            bundle_name=bundle_name,
            bookmark_id=local.id,
            key=local.key,
            remote_key=remote.key,
            local=local,
            remote=remote,
            local_modified=local.metadata.last_modified,
            remote_modified=remote.metadata.last_modified,
        )
    )
    return local


def _merge_bookmarks(
    local: Sequence[Bookmark],
    remote: Sequence[Bookmark],
    ctx: _MergeContext,
    category_name: str,
    bundle_name: str,
) -> tuple[Bookmark, ...]:
    local_map = {b.key: b for b in local}
    remote_map = {b.key: b for b in remote}
    return _merge_keyed(
        local,
        remote,
        lambda b: b.key,
        lambda l, r: _merge_bookmark_pair(l, r, ctx, category_name, bundle_name),
        ctx,
        pairs=_pair_edited_bookmarks(local_map, remote_map),
    )


# ---------------------------------------------------------------------------
# Bundles and categories
# ---------------------------------------------------------------------------


def _merge_bundle_pair(
    local: Bundle, remote: Bundle, ctx: _MergeContext, category_name: str
) -> Bundle | None:
    choice = ctx.resolution_for(ConflictType.BUNDLE, category_name, local.name)
    if choice is not None:
        return _pick(choice, local, remote)

    outcome = _deletion_rule(local, remote, ctx.last_synced)
    if outcome == _DROP:
        return None
    base = remote if outcome == "remote" else local
    bookmarks = _merge_bookmarks(
        local.bookmarks, remote.bookmarks, ctx, category_name, local.name
    )
    return _finish_container(
        base, local, remote, "bookmarks", bookmarks, compare_bundles_content
    )


def _merge_category_pair(
    local: Category, remote: Category, ctx: _MergeContext
) -> Category | None:
    choice = ctx.resolution_for(ConflictType.CATEGORY, local.name)
    if choice is not None:
        return _pick(choice, local, remote)

    outcome = _deletion_rule(local, remote, ctx.last_synced)
    if outcome == _DROP:
        return None
    base = remote if outcome == "remote" else local
    bundles = _merge_keyed(
        local.bundles,
        remote.bundles,
        lambda b: b.key,
        lambda l, r: _merge_bundle_pair(l, r, ctx, local.name),
        ctx,
    )
    return _finish_container(
        base, local, remote, "bundles", bundles, compare_categories_content
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def merge_roots(
    local: Root,
    remote: Root,
    last_synced: datetime = EPOCH,
    resolutions: Iterable[ConflictResolution] = (),
    strategy: MergeStrategy | str = MergeStrategy.TIMESTAMP,
) -> MergeResult:
    """Three-way merge *local* and *remote* around *last_synced*.

    Never raises for data reasons; disagreement comes back as
    ``conflicts``.  When ``has_conflicts`` is true the merged tree must not
    be persisted.
    """
    ctx = _MergeContext(
        last_synced=last_synced,
        resolutions=tuple(resolutions),
        resolver=create_resolver(strategy),
    )
    categories = _merge_keyed(
        local.categories,
        remote.categories,
        lambda c: c.key,
        lambda l, r: _merge_category_pair(l, r, ctx),
        ctx,
    )

    merged = local.model_copy(update={"categories": categories})
    has_changed = not compare_roots_content(merged, local)
    if has_changed:
        bump = max(
            [local.metadata.last_modified, remote.metadata.last_modified]
            + [c.metadata.last_modified for c in categories]
        )
        merged = merged.model_copy(
            update={"metadata": RootMetadata(last_modified=bump)}
        )
    else:
        merged = local

    conflicts = tuple(ctx.conflicts)
    logger.debug(
        "Merged trees: changed=%s conflicts=%d", has_changed, len(conflicts)
    )
    return MergeResult(
        merged=merged,
        conflicts=conflicts,
        has_conflicts=bool(conflicts),
        has_changed=has_changed,
    )


def resolve_conflicts(
    local: Root,
    remote: Root,
    resolutions: Iterable[ConflictResolution],
    last_synced: datetime = EPOCH,
    strategy: MergeStrategy | str = MergeStrategy.TIMESTAMP,
) -> Root:
    """Re-merge with user resolutions.

    Raises:
        UnresolvedConflictsError: If conflicts remain.
    """
    result = merge_roots(local, remote, last_synced, resolutions, strategy)
    if result.has_conflicts:
        raise UnresolvedConflictsError(
            result.conflicts,
            "Conflicts still exist after resolution attempt",
        )
    return result.merged


def has_conflicts(
    local: Root, remote: Root, last_synced: datetime = EPOCH
) -> bool:
    return merge_roots(local, remote, last_synced).has_conflicts


def get_conflicts(
    local: Root, remote: Root, last_synced: datetime = EPOCH
) -> tuple[MergeConflict, ...]:
    return merge_roots(local, remote, last_synced).conflicts


# ---------------------------------------------------------------------------
# Input preparation
# ---------------------------------------------------------------------------


def align_with_base(remote: Root, base: Root, base_time: datetime) -> Root:
    """Stamp remote nodes unchanged since *base* with *base_time*.

    Decoded remote nodes all carry the gist revision time.  Nodes whose
    content equals the last synced snapshot have not changed since
    *base_time*, and giving them that time lets local edits made after the
    sync win against them.
    """
    base_categories = {c.name: c for c in base.active_categories}
    categories = []
    for category in remote.categories:
        base_category = base_categories.get(category.name)
        if base_category is None:
            categories.append(category)
            continue

        base_bundles = {b.name: b for b in base_category.active_bundles}
        bundles = []
        for bundle in category.bundles:
            base_bundle = base_bundles.get(bundle.name)
            if base_bundle is None:
                bundles.append(bundle)
                continue
            base_marks = {b.key: b for b in base_bundle.active_bookmarks}
            bookmarks = tuple(
                touch(b, base_time)
                if b.key in base_marks
                and compare_bookmarks_content(b, base_marks[b.key])
                else b
                for b in bundle.bookmarks
            )
            bundle = bundle.model_copy(update={"bookmarks": bookmarks})
            if compare_bundles_content(bundle, base_bundle):
                bundle = touch(bundle, base_time)
            bundles.append(bundle)

        category = category.model_copy(update={"bundles": tuple(bundles)})
        if compare_categories_content(category, base_category):
            category = touch(category, base_time)
        categories.append(category)

    return remote.model_copy(update={"categories": tuple(categories)})


def _removed_remotely(node, last_synced: datetime) -> bool:
    return (
        not node.is_deleted
        and node.metadata.last_synced != EPOCH
        and latest_modified(node) <= last_synced
    )


def prune_remote_deletions(
    local: Root, remote: Root, last_synced: datetime
) -> Root:
    """Drop local nodes the remote no longer has and local did not touch.

    Tombstones are not persisted, so a remote deletion shows up as absence.
    A node absent remotely is dropped when it took part in a sync and
    nothing in its subtree changed after *last_synced*; anything else is
    a local addition and stays.
    """
    if last_synced == EPOCH:
        return local

    remote_categories = {c.name: c for c in remote.active_categories}
    changed = False
    categories = []
    for category in local.categories:
        remote_category = remote_categories.get(category.name)
        if remote_category is None:
            if _removed_remotely(category, last_synced):
                logger.debug("Category %r removed remotely", category.name)
                changed = True
            else:
                categories.append(category)
            continue

        remote_bundles = {b.name: b for b in remote_category.active_bundles}
        bundles = []
        bundles_changed = False
        for bundle in category.bundles:
            remote_bundle = remote_bundles.get(bundle.name)
            if remote_bundle is None:
                if _removed_remotely(bundle, last_synced):
                    bundles_changed = True
                else:
                    bundles.append(bundle)
                continue

            remote_keys = {b.key for b in remote_bundle.active_bookmarks}
            kept = tuple(
                b
                for b in bundle.bookmarks
                if b.key in remote_keys or not _removed_remotely(b, last_synced)
            )
            if len(kept) != len(bundle.bookmarks):
                bundle = bundle.model_copy(update={"bookmarks": kept})
                bundles_changed = True
            bundles.append(bundle)

        if bundles_changed:
            category = category.model_copy(update={"bundles": tuple(bundles)})
            changed = True
        categories.append(category)

    if not changed:
        return local
    return local.model_copy(update={"categories": tuple(categories)})


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------


def generate_diff(
    old_content: str,
    new_content: str,
    label_old: str = "local",
    label_new: str = "remote",
) -> str:
    """Generate a unified diff between two strings.

    Returns:
        A unified diff string.  Empty string if the contents are identical.
    """
    diff_lines = difflib.unified_diff(
        old_content.splitlines(True),
        new_content.splitlines(True),
        fromfile=label_old,
        tofile=label_new,
    )
    return "".join(diff_lines)
