"""In-memory gist store and repository.

``MemoryGistStore`` stands in for the GitHub gist API: it keeps gists in a
dict, hands out a fresh ETag on every write and rejects writes made
against a stale ETag, exactly like the remote would.  ``MockGistRepository``
is the ``GistRepository`` implementation over it.  Used by ``--mock`` mode
and by the test suite.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from ..config import Config
from ..converters.markdown import decode_result, encode
from ..core.client import GistDocument
from ..errors import GistmarksError, NotFound, VersionConflict
from ..result import Result, failure, success
from ..tree.models import Root, now_utc
from ..tree.operations import create_root

logger = logging.getLogger(__name__)


@dataclass
class _StoredGist:
    gist_id: str
    files: dict[str, str]
    etag: str
    updated_at: datetime
    description: str = ""
    revisions: list[str] = field(default_factory=list)


class MemoryGistStore:
    """Dict-backed gist storage with optimistic concurrency.

    Args:
        clock: Source of revision times.  Revision times are forced to be
            strictly increasing per gist even if the clock is not.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or now_utc
        self._gists: dict[str, _StoredGist] = {}
        self._ids = itertools.count(1)
        self._versions = itertools.count(1)
        self._lock = threading.Lock()

    def _next_etag(self) -> str:
        return f'"v{next(self._versions)}"'

    def _next_time(self, previous: datetime | None = None) -> datetime:
        ts = self._clock()
        if previous is not None and ts <= previous:
            ts = previous + timedelta(milliseconds=1)
        return ts

    @staticmethod
    def _document(gist: _StoredGist) -> GistDocument:
        return GistDocument(
            gist_id=gist.gist_id,
            etag=gist.etag,
            files=dict(gist.files),
            updated_at=gist.updated_at,
            revision=gist.revisions[-1] if gist.revisions else None,
            description=gist.description,
        )

    def _get(self, gist_id: str) -> _StoredGist:
        gist = self._gists.get(gist_id)
        if gist is None:
            raise NotFound(f"Gist {gist_id} not found")
        return gist

    # ------------------------------------------------------------------
    # Gist API
    # ------------------------------------------------------------------

    def create(
        self, filename: str, content: str, description: str = ""
    ) -> GistDocument:
        with self._lock:
            gist_id = f"mem{next(self._ids):04d}"
            etag = self._next_etag()
            gist = _StoredGist(
                gist_id=gist_id,
                files={filename: content},
                etag=etag,
                updated_at=self._next_time(),
                description=description,
                revisions=[etag],
            )
            self._gists[gist_id] = gist
            logger.debug("Created in-memory gist %s", gist_id)
            return self._document(gist)

    def get(self, gist_id: str) -> GistDocument:
        with self._lock:
            return self._document(self._get(gist_id))

    def etag_of(self, gist_id: str) -> str:
        with self._lock:
            return self._get(gist_id).etag

    def put(
        self,
        gist_id: str,
        filename: str,
        content: str,
        expected_etag: str | None,
        description: str | None = None,
    ) -> GistDocument:
        """Replace one file, conditioned on *expected_etag*.

        Raises:
            NotFound: Unknown gist.
            VersionConflict: *expected_etag* is not the current ETag.
        """
        with self._lock:
            gist = self._get(gist_id)
            if expected_etag != gist.etag:
                raise VersionConflict(
                    f"Gist {gist_id} changed remotely",
                    expected=expected_etag,
                    actual=gist.etag,
                )
            gist.files[filename] = content
            if description is not None:
                gist.description = description
            gist.etag = self._next_etag()
            gist.updated_at = self._next_time(gist.updated_at)
            gist.revisions.append(gist.etag)
            return self._document(gist)

    def delete(self, gist_id: str) -> None:
        with self._lock:
            self._gists.pop(gist_id, None)

    def find_by_filename(self, filename: str) -> str | None:
        with self._lock:
            for gist in self._gists.values():
                if filename in gist.files:
                    return gist.gist_id
        return None


class MockGistRepository:
    """``GistRepository`` over a ``MemoryGistStore``.

    Same contract as ``FetchGistRepository``: ``update`` without a held
    ETag, or against a stale one, fails with ``VersionConflict`` and
    writes nothing.
    """

    def __init__(
        self,
        config: Config,
        gist_id: str,
        backend: MemoryGistStore,
        etag: str | None = None,
    ) -> None:
        self.config = config
        self.gist_id = gist_id
        self.filename = config.filename
        self.etag = etag
        self.revision_time: datetime | None = None
        self._store = backend

    def _remember(self, document: GistDocument) -> None:
        self.etag = document.etag
        self.revision_time = document.updated_at

    async def read(self) -> Result[Root]:
        try:
            document = self._store.get(self.gist_id)
        except GistmarksError as exc:
            return failure(exc)
        text = document.files.get(self.filename)
        if text is None:
            return failure(
                NotFound(f"Gist {self.gist_id} has no file {self.filename!r}")
            )
        result = decode_result(text, document.updated_at)
        if result.success:
            self._remember(document)
        return result

    async def update(
        self, root: Root, description: str | None = None
    ) -> Result[Root]:
        if self.etag is None:
            return failure(
                VersionConflict("No version token held; read the gist first")
            )
        try:
            document = self._store.put(
                self.gist_id,
                self.filename,
                encode(root),
                self.etag,
                description=description,
            )
        except GistmarksError as exc:
            return failure(exc)
        self._remember(document)
        return success(root)

    async def has_remote_changes(self) -> Result[bool]:
        try:
            return success(self._store.etag_of(self.gist_id) != self.etag)
        except GistmarksError as exc:
            return failure(exc)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        config: Config,
        root: Root | None = None,
        *,
        backend: MemoryGistStore,
    ) -> Result[MockGistRepository]:
        document = backend.create(
            config.filename, encode(root or create_root()), config.description
        )
        repo = cls(config, document.gist_id, backend)
        repo._remember(document)
        return success(repo)

    @classmethod
    async def exists(
        cls, config: Config, gist_id: str, *, backend: MemoryGistStore
    ) -> Result[bool]:
        try:
            backend.get(gist_id)
        except NotFound:
            return success(False)
        return success(True)

    @classmethod
    async def find_by_filename(
        cls, config: Config, *, backend: MemoryGistStore
    ) -> Result[str | None]:
        return success(backend.find_by_filename(config.filename))
