"""Sync outcome formatting.

- ``format_sync_outcome`` -- post-sync summary for the terminal.
- ``format_conflicts`` -- one block per conflict with a unified diff of
  the two bookmark versions.
- ``outcome_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from ..tree.metadata import format_timestamp
from ..tree.models import Bookmark
from .merger import generate_diff

if TYPE_CHECKING:
    from .models import MergeConflict, SyncOutcome


def _render_bookmark(bookmark: Bookmark) -> str:
    lines = [f"- [{bookmark.title}]({bookmark.url})"]
    if bookmark.tags:
        lines.append(f"  - tags: {', '.join(bookmark.tags)}")
    if bookmark.notes:
        lines.append(f"  - notes: {bookmark.notes}")
    return "\n".join(lines) + "\n"


# ------------------------------------------------------------------
# Human-readable output
# ------------------------------------------------------------------


def format_sync_outcome(outcome: SyncOutcome) -> str:
    """Format a sync outcome as human-readable text."""
    stats = _count(outcome)
    lines = [outcome.summary()]
    if outcome.synced_at is not None:
        lines.append(f"Synced at: {format_timestamp(outcome.synced_at)}")
    if outcome.attempts > 1:
        lines.append(f"Attempts: {outcome.attempts}")
    lines.append(
        f"{stats['categories']} categories, {stats['bundles']} bundles, "
        f"{stats['bookmarks']} bookmarks"
    )
    if outcome.has_conflicts:
        lines.append("")
        lines.append(format_conflicts(outcome.conflicts))
    return "\n".join(lines).rstrip()


def format_conflicts(conflicts: Sequence[MergeConflict]) -> str:
    """Format conflicts for review, each with a diff of both versions."""
    if not conflicts:
        return "No conflicts."

    lines: list[str] = []
    for index, conflict in enumerate(conflicts, 1):
        where = f"{conflict.category_name} / {conflict.bundle_name}"
        local_time = format_timestamp(conflict.local_modified)
        remote_time = format_timestamp(conflict.remote_modified)
        lines.append(f"Conflict {index}: {where}")
        lines.append(f"  local  modified {local_time}: {conflict.key}")
        lines.append(f"  remote modified {remote_time}: {conflict.remote_key}")
        diff = generate_diff(
            _render_bookmark(conflict.local),
            _render_bookmark(conflict.remote),
        )
        lines.append(diff.rstrip() if diff else "(no textual differences)")
        lines.append("")
    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def _count(outcome: SyncOutcome) -> dict[str, int]:
    categories = outcome.root.active_categories
    bundles = [b for c in categories for b in c.active_bundles]
    return {
        "categories": len(categories),
        "bundles": len(bundles),
        "bookmarks": sum(len(b.active_bookmarks) for b in bundles),
    }


def outcome_to_json(outcome: SyncOutcome) -> dict:
    """Convert a sync outcome to a JSON-serialisable dict."""
    return {
        "gist_id": outcome.gist_id,
        "etag": outcome.etag,
        "synced_at": (
            format_timestamp(outcome.synced_at) if outcome.synced_at else None
        ),
        "pushed": outcome.pushed,
        "attempts": outcome.attempts,
        "has_conflicts": outcome.has_conflicts,
        "counts": _count(outcome),
        "conflicts": [
            {
                "category": c.category_name,
                "bundle": c.bundle_name,
                "bookmark_id": c.bookmark_id,
                "local": {
                    "title": c.local.title,
                    "url": c.local.url,
                    "modified": format_timestamp(c.local_modified),
                },
                "remote": {
                    "title": c.remote.title,
                    "url": c.remote.url,
                    "modified": format_timestamp(c.remote_modified),
                },
            }
            for c in outcome.conflicts
        ],
    }
