"""Conflict resolution strategies for the merge engine.

A resolver decides which side of a bookmark pair wins when both sides
are active and their content differs:

- ``TimestampResolver``: the strictly newer ``last_modified`` wins; an
  exact tie is left undecided and becomes a ``MergeConflict``.
- ``LocalWinsResolver``: always picks local.
- ``RemoteWinsResolver``: always picks remote.

The ``create_resolver()`` factory maps strategy strings to instances.
``resolutions_for()`` turns pending conflicts into user resolutions that
all prefer one side.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

from ..tree.models import Bookmark
from .models import (
    ConflictResolution,
    MergeConflict,
    MergeStrategy,
    Side,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ConflictResolver(Protocol):
    """Protocol that all bookmark resolvers must satisfy."""

    def resolve(self, local: Bookmark, remote: Bookmark) -> Side | None:
        """Pick the winning side, or ``None`` for a true conflict.

        Only called when the two bookmarks differ in content.
        """
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


class TimestampResolver:
    """Newer edit wins; identical timestamps are a conflict."""

    def resolve(self, local: Bookmark, remote: Bookmark) -> Side | None:
        local_ts = local.metadata.last_modified
        remote_ts = remote.metadata.last_modified
        if local_ts > remote_ts:
            return "local"
        if remote_ts > local_ts:
            return "remote"
        logger.debug(
            "Timestamp tie for %s vs %s -- conflict", local.key, remote.key
        )
        return None


class LocalWinsResolver:
    """Always resolve in favour of local content."""

    def resolve(self, local: Bookmark, remote: Bookmark) -> Side | None:
        return "local"


class RemoteWinsResolver:
    """Always resolve in favour of remote content."""

    def resolve(self, local: Bookmark, remote: Bookmark) -> Side | None:
        return "remote"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[MergeStrategy, type] = {
    MergeStrategy.TIMESTAMP: TimestampResolver,
    MergeStrategy.LOCAL_WINS: LocalWinsResolver,
    MergeStrategy.REMOTE_WINS: RemoteWinsResolver,
}


def create_resolver(strategy: MergeStrategy | str) -> ConflictResolver:
    """Create a resolver for the given strategy.

    Args:
        strategy: A ``MergeStrategy`` or one of ``"timestamp-based"``,
            ``"local-wins"``, ``"remote-wins"``.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    try:
        key = MergeStrategy(strategy)
    except ValueError:
        raise ValueError(
            f"Unknown merge strategy: '{strategy}'. Valid strategies: "
            f"{sorted(s.value for s in MergeStrategy)}"
        ) from None
    return _STRATEGY_MAP[key]()


# ---------------------------------------------------------------------------
# Bulk resolutions
# ---------------------------------------------------------------------------


def resolutions_for(
    conflicts: Iterable[MergeConflict], prefer: Side
) -> list[ConflictResolution]:
    """Build one resolution per conflict, all choosing *prefer*."""
    if prefer not in ("local", "remote"):
        raise ValueError(
            f"Invalid resolution '{prefer}': must be 'local' or 'remote'"
        )
    return [ConflictResolution.for_conflict(c, prefer) for c in conflicts]
