"""Tests for sync/engine.py -- the sync orchestrator.

Runs full cycles against ``MemoryGistStore``; other devices are simulated
by writing to the store directly.

Covers:
- initialize(): create, find by file name, explicit id, rebinding
- Operations push through read -> merge -> transform -> write
- Remote additions and deletions reach the local tree
- VersionConflict retry and giving up after max_retries
- Merge conflicts: pending state, callbacks, resolution
- Working copy persistence across engine instances
- load_from_remote() / force_reload()
- Watching
"""

import dataclasses
from datetime import datetime, timezone

import pytest

from gistmarks.converters.markdown import EMPTY_HEADER
from gistmarks.errors import (
    NotFound,
    UnresolvedConflictsError,
    ValidationError,
    VersionConflict,
)
from gistmarks.sync.engine import SyncEngine
from gistmarks.sync.memory import MockGistRepository
from gistmarks.sync.resolver import resolutions_for
from gistmarks.sync.state import SyncState
from gistmarks.tree import operations as ops
from gistmarks.tree.models import (
    Bookmark,
    BookmarkFilter,
    BookmarkInput,
    Bundle,
    Category,
    NodeMetadata,
    Root,
)

FILENAME = "bookmarks.md"
WORK = "# Work\n\n## Q1\n\n- [Docs](https://docs.example)"
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def engine(memory_config, memory_store, sync_state):
    return SyncEngine(memory_config, state=sync_state, backend=memory_store)


@pytest.fixture
def work_gist(memory_store):
    """Gist already holding the Work/Q1 collection."""
    return memory_store.create(FILENAME, WORK).gist_id


def remote_text(store, gist_id):
    return store.get(gist_id).files[FILENAME]


def remote_write(store, gist_id, text):
    """Another device writes the gist."""
    store.put(gist_id, FILENAME, text, store.etag_of(gist_id))


def titles(engine):
    return [r.bookmark.title for r in engine.search()]


def docs_id(engine):
    (match,) = engine.search(BookmarkFilter(search_term="docs"))
    return match.bookmark.id


class RacingRepository(MockGistRepository):
    """Lets another device write just before each of our updates."""

    def __init__(self, *args, race=None, repeat=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.race = race
        self.repeat = repeat

    async def update(self, root, description=None):
        if self.race is not None:
            race = self.race
            if not self.repeat:
                self.race = None
            race()
        return await super().update(root, description)


# ---------------------------------------------------------------------------
# Binding
# ---------------------------------------------------------------------------


class TestInitialize:
    """Tests for SyncEngine.initialize()."""

    async def test_creates_gist_when_none_found(self, engine, memory_store):
        result = await engine.initialize()

        assert result.success
        assert result.data.pushed
        assert engine.gist_id is not None
        assert engine.state.get_bound_gist_id() == engine.gist_id
        assert remote_text(memory_store, engine.gist_id).startswith(EMPTY_HEADER)

    async def test_finds_existing_gist_by_filename(self, engine, work_gist):
        result = await engine.initialize()

        assert result.success
        assert not result.data.pushed
        assert engine.gist_id == work_gist
        assert titles(engine) == ["Docs"]

    async def test_explicit_unknown_gist_fails(self, engine):
        result = await engine.initialize(gist_id="nope")

        assert not result.success
        assert isinstance(result.error, NotFound)

    async def test_records_sync(self, engine, work_gist):
        result = await engine.initialize()

        assert engine.state.get_last_synced(work_gist) == result.data.synced_at
        assert engine.state.get_base(work_gist) == WORK

    async def test_rebinding_discards_previous_tree(
        self, engine, memory_store, work_gist
    ):
        await engine.initialize()
        home = memory_store.create(
            FILENAME, "# Home\n\n## Misc\n\n- [News](https://news.example)"
        )

        result = await engine.initialize(gist_id=home.gist_id)

        assert result.success
        assert engine.gist_id == home.gist_id
        assert engine.state.get_bound_gist_id() == home.gist_id
        assert titles(engine) == ["News"]

    async def test_deleted_gist_recreated_from_local_copy(
        self, memory_config, memory_store, sync_state, work_gist
    ):
        first = SyncEngine(memory_config, state=sync_state, backend=memory_store)
        await first.initialize()
        memory_store.delete(work_gist)

        second = SyncEngine(memory_config, state=sync_state, backend=memory_store)
        result = await second.initialize()

        assert result.success
        assert result.data.pushed
        assert second.gist_id != work_gist
        assert titles(second) == ["Docs"]
        assert sync_state.get_base(work_gist) is None
        assert "[Docs](https://docs.example)" in remote_text(
            memory_store, second.gist_id
        )

    async def test_unbound_engine_refuses_sync(self, engine):
        result = await engine.sync_with_remote()

        assert not result.success
        assert isinstance(result.error, NotFound)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class TestOperations:
    """Mutations go through a full sync cycle."""

    async def test_add_bookmark_pushes(self, engine, memory_store, work_gist):
        await engine.initialize()

        result = await engine.add_bookmark(
            "Work", "Q1", BookmarkInput(title="API", url="https://api.example")
        )

        assert result.success
        assert result.data.pushed
        assert "- [API](https://api.example)" in remote_text(memory_store, work_gist)
        assert engine.state.get_last_synced(work_gist) == result.data.synced_at

    async def test_validation_failure_writes_nothing(
        self, engine, memory_store, work_gist
    ):
        await engine.initialize()
        etag = memory_store.etag_of(work_gist)

        result = await engine.add_category("Work")

        assert not result.success
        assert isinstance(result.error, ValidationError)
        assert "already exists" in str(result.error)
        assert memory_store.etag_of(work_gist) == etag

    async def test_concurrent_remote_addition_kept(
        self, engine, memory_store, work_gist
    ):
        await engine.initialize()
        remote_write(
            memory_store, work_gist, WORK + "\n- [Remote](https://remote.example)"
        )

        result = await engine.add_bookmark(
            "Work", "Q1", BookmarkInput(title="Local", url="https://local.example")
        )

        assert result.success
        text = remote_text(memory_store, work_gist)
        assert "[Remote](https://remote.example)" in text
        assert "[Local](https://local.example)" in text
        assert sorted(titles(engine)) == ["Docs", "Local", "Remote"]

    async def test_remove_bookmark_reaches_remote(
        self, engine, memory_store, work_gist
    ):
        await engine.initialize()

        result = await engine.remove_bookmark("Work", "Q1", docs_id(engine))

        assert result.success
        assert "Docs" not in remote_text(memory_store, work_gist)
        assert titles(engine) == []

    async def test_rename_category(self, engine, memory_store, work_gist):
        await engine.initialize()

        result = await engine.rename_category("Work", "Job")

        assert result.success
        text = remote_text(memory_store, work_gist)
        assert text.startswith("# Job")
        assert "# Work" not in text

    async def test_batch_and_move(self, engine, memory_store, work_gist):
        await engine.initialize()
        await engine.add_bundle("Work", "Q2")
        await engine.add_bookmarks_batch(
            "Work",
            "Q2",
            [
                BookmarkInput(title="A", url="https://a.example"),
                BookmarkInput(title="B", url="https://b.example"),
            ],
        )

        result = await engine.move_bookmark("Work", "Q1", "Work", "Q2", docs_id(engine))

        assert result.success
        q2 = engine.search(BookmarkFilter(bundle_name="Q2"))
        assert sorted(r.bookmark.title for r in q2) == ["A", "B", "Docs"]

    async def test_stats(self, engine, work_gist):
        await engine.initialize()

        stats = engine.stats()

        assert stats.categories_count == 1
        assert stats.bundles_count == 1
        assert stats.bookmarks_count == 1


# ---------------------------------------------------------------------------
# Sync without local edits
# ---------------------------------------------------------------------------


class TestSyncWithRemote:
    """Pulling remote changes into the local tree."""

    async def test_remote_deletion_propagates(self, engine, memory_store):
        gist_id = memory_store.create(
            FILENAME, WORK + "\n- [Other](https://other.example)"
        ).gist_id
        await engine.initialize()
        remote_write(memory_store, gist_id, WORK)

        result = await engine.sync_with_remote()

        assert result.success
        assert not result.data.pushed
        assert titles(engine) == ["Docs"]

    async def test_nothing_changed_does_not_push(
        self, engine, memory_store, work_gist
    ):
        await engine.initialize()
        etag = memory_store.etag_of(work_gist)

        result = await engine.sync_with_remote()

        assert result.success
        assert not result.data.pushed
        assert memory_store.etag_of(work_gist) == etag

    async def test_before_and_after_operation(
        self, engine, memory_store, work_gist
    ):
        await engine.initialize()

        before = await engine.sync_before_operation()
        changed = ops.add_category(before.data, "Home").unwrap()
        saved = await engine.save_after_operation(changed)

        assert saved.success
        assert saved.data.pushed
        assert "# Home" in remote_text(memory_store, work_gist)

    async def test_save_after_unchanged_tree_skips_push(self, engine, work_gist):
        await engine.initialize()

        before = await engine.sync_before_operation()
        saved = await engine.save_after_operation(before.data)

        assert saved.success
        assert not saved.data.pushed

    async def test_load_from_remote_replaces_tree(
        self, engine, memory_store, work_gist
    ):
        await engine.initialize()
        remote_write(memory_store, work_gist, "# Home")

        result = await engine.load_from_remote()

        assert result.success
        assert [c.name for c in engine.root.categories] == ["Home"]

    async def test_force_reload_clears_history(
        self, engine, memory_store, work_gist
    ):
        await engine.initialize()
        engine.state.set_last_synced(work_gist, T0)

        result = await engine.force_reload()

        assert result.success
        assert engine.state.get_last_synced(work_gist) == result.data.synced_at
        assert titles(engine) == ["Docs"]


# ---------------------------------------------------------------------------
# Version conflicts
# ---------------------------------------------------------------------------


class TestVersionConflictRetry:
    """Writes racing with another device."""

    async def test_retry_merges_racing_write(
        self, engine, memory_config, memory_store, work_gist
    ):
        await engine.initialize()

        def race():
            remote_write(
                memory_store,
                work_gist,
                remote_text(memory_store, work_gist)
                + "\n- [Race](https://race.example)",
            )

        engine.repository = RacingRepository(
            memory_config,
            work_gist,
            memory_store,
            etag=engine.repository.etag,
            race=race,
        )

        result = await engine.add_bookmark(
            "Work", "Q1", BookmarkInput(title="API", url="https://api.example")
        )

        assert result.success
        assert result.data.attempts == 2
        text = remote_text(memory_store, work_gist)
        assert "[Race](https://race.example)" in text
        assert "[API](https://api.example)" in text

    async def test_gives_up_after_max_retries(
        self, memory_config, memory_store, sync_state, work_gist
    ):
        config = dataclasses.replace(memory_config, max_retries=0)
        engine = SyncEngine(config, state=sync_state, backend=memory_store)
        await engine.initialize()
        counter = iter(range(100))

        def race():
            remote_write(
                memory_store,
                work_gist,
                WORK + f"\n- [Race {next(counter)}](https://race.example)",
            )

        engine.repository = RacingRepository(
            config,
            work_gist,
            memory_store,
            etag=engine.repository.etag,
            race=race,
            repeat=True,
        )

        result = await engine.add_bookmark(
            "Work", "Q1", BookmarkInput(title="API", url="https://api.example")
        )

        assert not result.success
        assert isinstance(result.error, VersionConflict)
        # The edit stays in the local tree for the next sync.
        assert "API" in titles(engine)

    async def test_update_without_read_is_rejected(
        self, memory_config, memory_store, work_gist
    ):
        repo = MockGistRepository(memory_config, work_gist, memory_store)

        result = await repo.update(ops.create_root())

        assert not result.success
        assert isinstance(result.error, VersionConflict)
        assert remote_text(memory_store, work_gist) == WORK


# ---------------------------------------------------------------------------
# Merge conflicts
# ---------------------------------------------------------------------------


def _local_docs(tags):
    """Local tree whose Docs bookmark was edited at the gist's revision time."""
    meta = NodeMetadata(last_modified=T0)
    return Root(
        categories=(
            Category(
                name="Work",
                metadata=meta,
                bundles=(
                    Bundle(
                        name="Q1",
                        metadata=meta,
                        bookmarks=(
                            Bookmark(
                                title="Docs",
                                url="https://docs.example",
                                tags=tags,
                                metadata=meta,
                            ),
                        ),
                    ),
                ),
            ),
        )
    )


@pytest.fixture
def conflicted(memory_config, fixed_store, sync_state):
    """Engine and store whose Docs bookmark differs with identical times."""
    gist_id = fixed_store.create(
        FILENAME, WORK + "\n  - tags: remote"
    ).gist_id
    engine = SyncEngine(
        memory_config,
        state=sync_state,
        root=_local_docs(("local",)),
        backend=fixed_store,
    )
    return engine, fixed_store, gist_id


class TestMergeConflicts:
    """Conflicts pause the cycle until resolved."""

    async def test_conflict_becomes_pending(self, conflicted):
        engine, store, gist_id = conflicted

        result = await engine.initialize(gist_id=gist_id)

        assert result.success
        assert result.data.has_conflicts
        assert len(result.data.conflicts) == 1
        assert engine.has_pending_conflicts()
        assert "tags: remote" in remote_text(store, gist_id)

    async def test_operations_blocked_while_pending(self, conflicted):
        engine, _, gist_id = conflicted
        await engine.initialize(gist_id=gist_id)

        result = await engine.add_category("Home")

        assert not result.success
        assert isinstance(result.error, UnresolvedConflictsError)

    async def test_on_conflict_callback(self, conflicted):
        engine, _, gist_id = conflicted
        await engine.initialize(gist_id=gist_id)
        seen = []

        await engine.sync_with_remote(on_conflict=seen.append)

        assert len(seen) == 1
        assert seen[0][0].bundle_name == "Q1"

    async def test_resolve_local_pushes(self, conflicted):
        engine, store, gist_id = conflicted
        outcome = (await engine.initialize(gist_id=gist_id)).data

        result = await engine.sync_with_conflict_resolution(
            resolutions_for(outcome.conflicts, "local")
        )

        assert result.success
        assert result.data.pushed
        assert "tags: local" in remote_text(store, gist_id)
        assert not engine.has_pending_conflicts()

    async def test_resolve_remote_adopts_remote(self, conflicted):
        engine, store, gist_id = conflicted
        outcome = (await engine.initialize(gist_id=gist_id)).data

        result = await engine.sync_with_conflict_resolution(
            resolutions_for(outcome.conflicts, "remote")
        )

        assert result.success
        (match,) = engine.search()
        assert match.bookmark.tags == ("remote",)

    async def test_empty_resolution_still_conflicted(self, conflicted):
        engine, _, gist_id = conflicted
        await engine.initialize(gist_id=gist_id)

        result = await engine.sync_with_conflict_resolution([])

        assert not result.success
        assert isinstance(result.error, UnresolvedConflictsError)
        assert "conflicts still exist" in str(result.error)


# ---------------------------------------------------------------------------
# Persistence and watching
# ---------------------------------------------------------------------------


class TestWorkingCopy:
    """The local tree survives a restart."""

    async def test_new_engine_resumes_local_tree(
        self, engine, memory_config, memory_store, tmp_path, work_gist
    ):
        await engine.initialize()
        await engine.add_bookmark(
            "Work", "Q1", BookmarkInput(title="API", url="https://api.example")
        )

        restarted = SyncEngine(
            memory_config, state=SyncState(tmp_path / "state"), backend=memory_store
        )

        assert sorted(titles(restarted)) == ["API", "Docs"]
        result = await restarted.initialize()
        assert result.success
        assert restarted.gist_id == work_gist

    async def test_mock_mode_uses_separate_state_dir(
        self, memory_config, memory_store, tmp_path
    ):
        engine = SyncEngine(memory_config, backend=memory_store)

        assert engine.state.path == tmp_path / "state" / "mock" / "state.json"


class TestWatching:
    """start_watching() / stop_watching()."""

    async def test_start_and_stop(self, engine, memory_config, work_gist):
        await engine.initialize()

        detector = engine.start_watching()

        assert detector.is_running()
        assert detector.interval == memory_config.poll_interval
        assert engine.start_watching() is detector
        engine.stop_watching()
        assert not detector.is_running()

    async def test_dialog_suppresses_checks(self, engine, memory_store, work_gist):
        await engine.initialize()
        remote_write(memory_store, work_gist, "# Home")
        detector = engine.start_watching()
        engine.set_conflict_dialog_open(True)

        try:
            assert not await detector.check_now()
        finally:
            engine.close()

    async def test_change_triggers_callback(self, engine, memory_store, work_gist):
        await engine.initialize()
        remote_write(memory_store, work_gist, "# Home")
        calls = []
        detector = engine.start_watching(lambda: calls.append(1))

        try:
            assert await detector.check_now()
        finally:
            engine.stop_watching()
        assert calls == [1]

    async def test_watch_requires_binding(self, engine):
        with pytest.raises(NotFound):
            engine.start_watching()
