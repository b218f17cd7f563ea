"""Pydantic models for the sync subsystem.

Defines the data contracts shared by the merger, resolver, engine and
reporter:

- ``MergeStrategy``: how a bookmark edited on both sides is decided.
- ``ConflictType`` / ``Side``: what a conflict or resolution refers to.
- ``MergeConflict``: a bookmark edited differently on both sides.
- ``ConflictResolution``: a user decision for one node.
- ``MergeResult``: outcome of ``merge_roots``.
- ``SyncOutcome``: outcome of one orchestrated sync.

All models are frozen (immutable).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel

from ..tree.models import Bookmark, BookmarkKey, Root


class MergeStrategy(str, Enum):
    """Strategies for bookmarks present and active on both sides."""

    TIMESTAMP = "timestamp-based"
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"


class ConflictType(str, Enum):
    CATEGORY = "category"
    BUNDLE = "bundle"
    BOOKMARK = "bookmark"


Side = Literal["local", "remote"]


class MergeConflict(BaseModel):
    """A bookmark whose two versions disagree with equal timestamps.

    Attributes:
        type: Always ``ConflictType.BOOKMARK`` today; containers are
            merged child by child and never conflict as a whole.
        category_name: Category holding the bookmark.
        bundle_name: Bundle holding the bookmark.
        bookmark_id: Display id of the local bookmark.
        key: Content key of the local bookmark.
        remote_key: Content key of the remote bookmark (differs from
            ``key`` when the title or URL was edited).
        local: Full local value.
        remote: Full remote value.
        local_modified: Local ``last_modified``.
        remote_modified: Remote ``last_modified``.
    """

    type: ConflictType = ConflictType.BOOKMARK
    category_name: str
    bundle_name: str
    bookmark_id: str
    key: BookmarkKey
    remote_key: BookmarkKey
    local: Bookmark
    remote: Bookmark
    local_modified: datetime
    remote_modified: datetime

    model_config = {"frozen": True}

    @property
    def path(self) -> str:
        return f"{self.category_name}/{self.bundle_name}/{self.key}"


class ConflictResolution(BaseModel):
    """User choice for one category, bundle or bookmark.

    A bookmark resolution matches a bookmark whose local or remote key
    equals ``bookmark_key``.
    """

    type: ConflictType
    category_name: str
    bundle_name: str | None = None
    bookmark_key: BookmarkKey | None = None
    resolution: Side

    model_config = {"frozen": True}

    @classmethod
    def for_conflict(
        cls, conflict: MergeConflict, resolution: Side
    ) -> ConflictResolution:
        return cls(
            type=ConflictType.BOOKMARK,
            category_name=conflict.category_name,
            bundle_name=conflict.bundle_name,
            bookmark_key=conflict.key,
            resolution=resolution,
        )


class MergeResult(BaseModel):
    """Result of a three-way merge.

    Attributes:
        merged: The merged tree.  With conflicts, conflicting bookmarks
            hold their local value as a placeholder; do not persist it.
        conflicts: Unresolved conflicts, in tree order.
        has_conflicts: ``bool(conflicts)``.
        has_changed: Whether ``merged`` differs in content from local.
    """

    merged: Root
    conflicts: tuple[MergeConflict, ...] = ()
    has_conflicts: bool = False
    has_changed: bool = False

    model_config = {"frozen": True}


class SyncOutcome(BaseModel):
    """Outcome of one orchestrated sync.

    Attributes:
        gist_id: The bound gist.
        etag: Version token after the sync.
        synced_at: The ``last_synced`` value recorded.
        root: The resulting local tree.
        conflicts: Conflicts waiting for resolution (nothing was pushed).
        has_conflicts: ``bool(conflicts)``.
        pushed: Whether the remote was written.
        attempts: Number of read-merge-write attempts used.
    """

    gist_id: str
    etag: str | None = None
    synced_at: datetime | None = None
    root: Root
    conflicts: tuple[MergeConflict, ...] = ()
    has_conflicts: bool = False
    pushed: bool = False
    attempts: int = 1

    model_config = {"frozen": True}

    def summary(self) -> str:
        """One-line human summary."""
        if self.has_conflicts:
            return (
                f"Sync of gist {self.gist_id} paused: "
                f"{len(self.conflicts)} conflict(s) need resolution"
            )
        action = "pushed" if self.pushed else "up to date"
        return f"Gist {self.gist_id} {action}"
