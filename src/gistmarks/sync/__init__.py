"""Gist synchronisation for the bookmark tree.

Modules:

- ``models``     -- ``MergeConflict``, ``ConflictResolution``,
  ``MergeResult``, ``SyncOutcome``: data contracts.
- ``merger``     -- three-way merge of two trees around ``last_synced``.
- ``resolver``   -- strategies for bookmarks edited on both sides.
- ``repository`` -- ``GistRepository`` protocol and the GitHub-backed
  ``FetchGistRepository``.
- ``memory``     -- in-memory gist store and ``MockGistRepository``.
- ``state``      -- ``SyncState``: the persisted ``last_synced`` marker.
- ``detector``   -- ``RemoteChangeDetector``: background polling.
- ``engine``     -- ``SyncEngine``: the read -> merge -> write cycle.
- ``reporter``   -- terminal and JSON formatting of outcomes.

Usage example
-------------
::

    from gistmarks.config import load_config
    from gistmarks.sync import SyncEngine, format_sync_outcome
    from gistmarks.tree import BookmarkInput

    engine = SyncEngine(load_config())
    result = await engine.initialize()
    result = await engine.add_bookmark(
        "Work", "Q1", BookmarkInput(title="Docs", url="https://docs.example")
    )
    print(format_sync_outcome(result.unwrap()))
"""

from .detector import RemoteChangeDetector
from .engine import SyncEngine
from .memory import MemoryGistStore, MockGistRepository
from .merger import (
    generate_diff,
    get_conflicts,
    has_conflicts,
    merge_roots,
    resolve_conflicts,
)
from .models import (
    ConflictResolution,
    ConflictType,
    MergeConflict,
    MergeResult,
    MergeStrategy,
    SyncOutcome,
)
from .reporter import format_conflicts, format_sync_outcome, outcome_to_json
from .repository import FetchGistRepository, GistRepository
from .resolver import create_resolver, resolutions_for
from .state import SyncState

__all__ = [
    "ConflictResolution",
    "ConflictType",
    "FetchGistRepository",
    "GistRepository",
    "MemoryGistStore",
    "MergeConflict",
    "MergeResult",
    "MergeStrategy",
    "MockGistRepository",
    "RemoteChangeDetector",
    "SyncEngine",
    "SyncOutcome",
    "SyncState",
    "create_resolver",
    "format_conflicts",
    "format_sync_outcome",
    "generate_diff",
    "get_conflicts",
    "has_conflicts",
    "merge_roots",
    "outcome_to_json",
    "resolutions_for",
    "resolve_conflicts",
]
