"""Sync orchestrator.

``SyncEngine`` owns the one in-memory bookmark tree and keeps it in step
with the bound gist.  Every change goes through the same cycle:

1. Read the remote tree (``GistRepository.read``), which refreshes the
   held ETag.
2. Align remote timestamps with the last synced snapshot and drop local
   nodes the remote deleted since.
3. Three-way merge around the persisted ``last_synced`` marker.
4. Apply the caller's transform to the merged tree.
5. Push (skipped when the Markdown would not change), stamp
   ``last_synced`` on the tree and record the sync in ``SyncState``.

A ``VersionConflict`` on push means someone wrote in between; the whole
cycle is re-run up to ``config.max_retries`` times.  Merge conflicts stop
the cycle before anything is written and are kept as pending until
``sync_with_conflict_resolution`` supplies a decision for each.

All public coroutines are serialised by one ``asyncio.Lock``; the tree
itself is immutable, so ``root`` hands out a snapshot.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from ..config import Config
from ..converters.markdown import decode_result, encode
from ..core.client import GistClient
from ..errors import NotFound, UnresolvedConflictsError, VersionConflict
from ..result import Result, failure, success
from ..tree import operations as ops
from ..tree.metadata import stamp_last_synced
from ..tree.models import (
    EPOCH,
    BookmarkFilter,
    BookmarkInput,
    BookmarkSearchResult,
    BookmarkStats,
    BookmarkUpdate,
    Root,
    now_utc,
)
from .detector import RemoteChangeDetector
from .memory import MemoryGistStore, MockGistRepository
from .merger import align_with_base, merge_roots, prune_remote_deletions
from .models import ConflictResolution, MergeConflict, MergeResult, SyncOutcome
from .repository import FetchGistRepository, GistRepository
from .state import SyncState

logger = logging.getLogger(__name__)

Transform = Callable[[Root], Result[Root]]
ConflictCallback = Callable[[Sequence[MergeConflict]], Any]


class SyncEngine:
    """Keep a local bookmark tree in sync with one gist.

    Args:
        config: Client configuration.
        repository: Repository for an already bound gist.  Usually left
            out and set up by ``initialize()``.
        state: Sync bookkeeping; defaults to ``config.state_dir`` (its
            ``mock`` subdirectory in mock mode).
        root: Starting tree; defaults to the saved working copy, else an
            empty collection.
        backend: ``GistClient`` (or ``MemoryGistStore`` in mock mode)
            handed to the repositories this engine creates.
    """

    def __init__(
        self,
        config: Config,
        repository: GistRepository | None = None,
        state: SyncState | None = None,
        root: Root | None = None,
        backend: GistClient | MemoryGistStore | None = None,
    ) -> None:
        self.config = config
        self.repository = repository
        state_dir = Path(config.state_dir)
        if config.use_mock:
            state_dir = state_dir / "mock"
        self.state = state or SyncState(state_dir)
        self._root = (
            root
            or self.state.load_working_copy(self.state.get_bound_gist_id())
            or ops.create_root()
        )
        if config.use_mock:
            self._repo_cls: Any = MockGistRepository
            self._backend = backend or MemoryGistStore()
        else:
            self._repo_cls = FetchGistRepository
            self._backend = backend or GistClient(config)
        self._lock = asyncio.Lock()
        self._pending: tuple[MergeConflict, ...] = ()
        self._remote: Root | None = None
        self._dialog_open = False
        self._detector: RemoteChangeDetector | None = None

    # ------------------------------------------------------------------
    # Snapshot and conflict state
    # ------------------------------------------------------------------

    @property
    def root(self) -> Root:
        return self._root

    @property
    def gist_id(self) -> str | None:
        return self.repository.gist_id if self.repository else None

    @property
    def pending_conflicts(self) -> tuple[MergeConflict, ...]:
        return self._pending

    def has_pending_conflicts(self) -> bool:
        return bool(self._pending)

    def set_conflict_dialog_open(self, is_open: bool) -> None:
        """Tell the engine whether a conflict dialog is on screen."""
        self._dialog_open = is_open

    def is_conflict_dialog_open(self) -> bool:
        return self._dialog_open

    def _set_root(self, root: Root) -> None:
        self._root = root
        self.state.save_working_copy(self.gist_id, root)

    def _unbound(self) -> Result:
        return failure(NotFound("No gist is bound; run 'gistmarks init' first"))

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    async def _reconcile(
        self, resolutions: Iterable[ConflictResolution] = ()
    ) -> Result[tuple[MergeResult, Root]]:
        repo = self.repository
        read = await repo.read()
        if not read.success:
            return read
        remote = read.data

        last_synced = self.state.get_last_synced(repo.gist_id)
        base_text = self.state.get_base(repo.gist_id)
        if base_text is not None and last_synced != EPOCH:
            base = decode_result(base_text)
            if base.success:
                remote = align_with_base(remote, base.data, last_synced)
            else:
                logger.warning("Ignoring unreadable sync base: %s", base.error)

        local = prune_remote_deletions(self._root, remote, last_synced)
        result = merge_roots(
            local,
            remote,
            last_synced,
            resolutions,
            self.config.merge_strategy,
        )
        return success((result, remote))

    async def _record(self, root: Root, pushed: bool, attempts: int) -> SyncOutcome:
        repo = self.repository
        synced_at = now_utc()
        # Never record a sync time older than the revision we just saw.
        if repo.revision_time is not None and repo.revision_time > synced_at:
            synced_at = repo.revision_time
        root = stamp_last_synced(root, synced_at)
        self.state.record_sync(repo.gist_id, synced_at, encode(root))
        self._set_root(root)
        self._pending = ()
        return SyncOutcome(
            gist_id=repo.gist_id,
            etag=repo.etag,
            synced_at=synced_at,
            root=root,
            pushed=pushed,
            attempts=attempts,
        )

    async def _sync_before(self) -> Result[Root]:
        reconciled = await self._reconcile()
        if not reconciled.success:
            return reconciled
        result, remote = reconciled.data
        if result.has_conflicts:
            self._pending = result.conflicts
            return failure(UnresolvedConflictsError(result.conflicts))
        self._set_root(result.merged)
        self._remote = remote
        return success(result.merged)

    async def _save_after(self, root: Root, attempts: int = 1) -> Result[SyncOutcome]:
        remote = self._remote
        pushed = False
        local_hash = SyncState.content_hash(encode(root))
        if remote is None or local_hash != SyncState.content_hash(encode(remote)):
            update = await self.repository.update(root)
            if not update.success:
                return update
            pushed = True
        self._remote = None
        return success(await self._record(root, pushed, attempts))

    def _should_retry(self, result: Result, attempts: int) -> bool:
        if result.success or not isinstance(result.error, VersionConflict):
            return False
        if attempts > self.config.max_retries:
            logger.warning(
                "Giving up after %d version conflicts",
                attempts,
                extra={"gist_id": self.repository.gist_id},
            )
            return False
        logger.info(
            "Gist changed during save, retrying (%d/%d)",
            attempts,
            self.config.max_retries,
            extra={"gist_id": self.repository.gist_id},
        )
        return True

    # ------------------------------------------------------------------
    # Public cycle API
    # ------------------------------------------------------------------

    async def sync_before_operation(self) -> Result[Root]:
        """Merge remote changes into the local tree before a change.

        Fails with ``UnresolvedConflictsError`` (local tree untouched) if
        the merge needs a user decision.
        """
        if self.repository is None:
            return self._unbound()
        async with self._lock:
            return await self._sync_before()

    async def save_after_operation(self, root: Root) -> Result[SyncOutcome]:
        """Push *root* and record the sync.

        A ``VersionConflict`` failure means the remote moved since
        ``sync_before_operation``; run the cycle again.
        """
        if self.repository is None:
            return self._unbound()
        async with self._lock:
            return await self._save_after(root)

    async def apply(self, transform: Transform) -> Result[SyncOutcome]:
        """Run *transform* inside a full sync cycle.

        Validation failures of *transform* are returned as-is and nothing
        is written.  Once *transform* succeeded its result is the local
        tree, whether or not the push goes through.
        """
        if self.repository is None:
            return self._unbound()
        async with self._lock:
            if self._pending:
                return failure(UnresolvedConflictsError(self._pending))
            before = await self._sync_before()
            if not before.success:
                return before
            changed = transform(before.data)
            if not changed.success:
                return changed

            # Kept even if the push fails; the next sync sends it.
            self._set_root(changed.data)
            saved = await self._save_after(changed.data)
            if self._should_retry(saved, 1):
                return await self._sync_cycle(attempts=1)
            return saved

    async def _sync_cycle(
        self,
        resolutions: Iterable[ConflictResolution] = (),
        strict: bool = False,
        attempts: int = 0,
    ) -> Result[SyncOutcome]:
        resolutions = tuple(resolutions)
        while True:
            attempts += 1
            reconciled = await self._reconcile(resolutions)
            if not reconciled.success:
                return reconciled
            result, remote = reconciled.data

            if result.has_conflicts:
                self._pending = result.conflicts
                if strict:
                    return failure(
                        UnresolvedConflictsError(
                            result.conflicts, "Error: conflicts still exist"
                        )
                    )
                logger.info(
                    "Sync paused on %d conflict(s)",
                    len(result.conflicts),
                    extra={"gist_id": self.repository.gist_id},
                )
                return success(
                    SyncOutcome(
                        gist_id=self.repository.gist_id,
                        etag=self.repository.etag,
                        root=self._root,
                        conflicts=result.conflicts,
                        has_conflicts=True,
                        attempts=attempts,
                    )
                )

            self._remote = remote
            saved = await self._save_after(result.merged, attempts)
            if not self._should_retry(saved, attempts):
                return saved

    async def sync_with_remote(
        self, on_conflict: ConflictCallback | None = None
    ) -> Result[SyncOutcome]:
        """Reconcile with the remote.

        With conflicts nothing is written; they become pending and
        *on_conflict* is called with them.
        """
        if self.repository is None:
            return self._unbound()
        async with self._lock:
            result = await self._sync_cycle()
        if result.success and result.data.has_conflicts and on_conflict:
            outcome = on_conflict(result.data.conflicts)
            if inspect.isawaitable(outcome):
                await outcome
        return result

    async def sync_with_conflict_resolution(
        self, resolutions: Iterable[ConflictResolution]
    ) -> Result[SyncOutcome]:
        """Re-merge with user *resolutions* and push.

        Fails with ``UnresolvedConflictsError`` if any conflict is left.
        """
        if self.repository is None:
            return self._unbound()
        async with self._lock:
            return await self._sync_cycle(resolutions, strict=True)

    async def load_from_remote(self) -> Result[SyncOutcome]:
        """Replace the local tree with the remote one."""
        if self.repository is None:
            return self._unbound()
        async with self._lock:
            read = await self.repository.read()
            if not read.success:
                return read
            logger.info("Loaded bookmarks from gist %s", self.repository.gist_id)
            return success(await self._record(read.data, pushed=False, attempts=1))

    async def force_reload(self) -> Result[SyncOutcome]:
        """Forget sync history and local edits, then load the remote."""
        if self.repository is None:
            return self._unbound()
        self.state.clear_last_synced(self.repository.gist_id)
        return await self.load_from_remote()

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    async def _resolve_gist_id(self, gist_id: str | None) -> Result[str | None]:
        for source, candidate in (
            ("argument", gist_id),
            ("state", self.state.get_bound_gist_id()),
            ("config", self.config.gist_id),
        ):
            if not candidate:
                continue
            found = await self._repo_cls.exists(
                self.config, candidate, backend=self._backend
            )
            if not found.success:
                return found
            if found.data:
                logger.debug("Using gist %s from %s", candidate, source)
                return success(candidate)
            if source != "state":
                return failure(NotFound(f"Gist {candidate} not found"))
            logger.warning("Previously bound gist %s is gone", candidate)
            self.state.clear_last_synced(candidate)

        return await self._repo_cls.find_by_filename(self.config, backend=self._backend)

    async def initialize(
        self, gist_id: str | None = None, watch: bool = False
    ) -> Result[SyncOutcome]:
        """Bind to a gist and bring the local tree up to date.

        The gist is, in order: *gist_id*, the one remembered in the sync
        state, ``config.gist_id``, the first of the user's gists holding
        the bookmark file, or a newly created one.
        """
        resolved = await self._resolve_gist_id(gist_id)
        if not resolved.success:
            return resolved

        previous = self.state.get_bound_gist_id()
        if previous and resolved.data and previous != resolved.data:
            logger.info("Rebinding from gist %s; discarding its local copy", previous)
            self._root = ops.create_root()

        if resolved.data is None:
            created = await self._repo_cls.create(
                self.config, self._root, backend=self._backend
            )
            if not created.success:
                return created
            self.repository = created.data
            self.state.set_bound_gist_id(self.repository.gist_id)
            async with self._lock:
                outcome = success(
                    await self._record(self._root, pushed=True, attempts=1)
                )
        else:
            self.repository = self._repo_cls(
                self.config, resolved.data, self._backend
            )
            self.state.set_bound_gist_id(resolved.data)
            if self._root.categories:
                outcome = await self.sync_with_remote()
            else:
                outcome = await self.load_from_remote()

        if outcome.success and watch:
            self.start_watching()
        return outcome

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    def start_watching(
        self, on_change: Callable[[], Any] | None = None
    ) -> RemoteChangeDetector:
        """Poll the gist and sync whenever it changes."""
        if self.repository is None:
            raise NotFound("No gist is bound; run 'gistmarks init' first")
        if self._detector is None or not self._detector.is_running():
            self._detector = RemoteChangeDetector(
                self.repository,
                on_change or self.sync_with_remote,
                interval=self.config.poll_interval,
                is_conflict_dialog_open=self.is_conflict_dialog_open,
                has_unresolved_conflict=self.has_pending_conflicts,
            )
            self._detector.start()
        return self._detector

    def stop_watching(self) -> None:
        if self._detector is not None:
            self._detector.stop()

    def close(self) -> None:
        self.stop_watching()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def add_category(self, name: str) -> Result[SyncOutcome]:
        return await self.apply(lambda root: ops.add_category(root, name))

    async def remove_category(self, name: str) -> Result[SyncOutcome]:
        return await self.apply(lambda root: ops.remove_category(root, name))

    async def rename_category(
        self, old_name: str, new_name: str
    ) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.rename_category(root, old_name, new_name)
        )

    async def add_bundle(self, category_name: str, name: str) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.add_bundle(root, category_name, name)
        )

    async def remove_bundle(self, category_name: str, name: str) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.remove_bundle(root, category_name, name)
        )

    async def rename_bundle(
        self, category_name: str, old_name: str, new_name: str
    ) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.rename_bundle(root, category_name, old_name, new_name)
        )

    async def move_bundle(
        self, from_category: str, to_category: str, bundle_name: str
    ) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.move_bundle(root, from_category, to_category, bundle_name)
        )

    async def add_bookmark(
        self, category_name: str, bundle_name: str, data: BookmarkInput
    ) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.add_bookmark(root, category_name, bundle_name, data)
        )

    async def add_bookmarks_batch(
        self,
        category_name: str,
        bundle_name: str,
        items: Sequence[BookmarkInput],
    ) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.add_bookmarks_batch(
                root, category_name, bundle_name, items
            )
        )

    async def update_bookmark(
        self,
        category_name: str,
        bundle_name: str,
        bookmark_id: str,
        changes: BookmarkUpdate,
    ) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.update_bookmark(
                root, category_name, bundle_name, bookmark_id, changes
            )
        )

    async def remove_bookmark(
        self, category_name: str, bundle_name: str, bookmark_id: str
    ) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.remove_bookmark(
                root, category_name, bundle_name, bookmark_id
            )
        )

    async def move_bookmark(
        self,
        from_category: str,
        from_bundle: str,
        to_category: str,
        to_bundle: str,
        bookmark_id: str,
    ) -> Result[SyncOutcome]:
        return await self.apply(
            lambda root: ops.move_bookmark(
                root, from_category, from_bundle, to_category, to_bundle, bookmark_id
            )
        )

    def search(
        self, criteria: BookmarkFilter | None = None
    ) -> list[BookmarkSearchResult]:
        return ops.search_bookmarks(self._root, criteria)

    def stats(self) -> BookmarkStats:
        return ops.get_stats(self._root)
