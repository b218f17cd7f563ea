"""Remote persistence of the bookmark tree.

A ``GistRepository`` reads and writes one Markdown file inside one gist
under optimistic concurrency: every successful ``read`` or ``update``
refreshes the held ETag, and ``update`` only succeeds if the remote is
still at that ETag.  Everything is returned as a ``Result``; HTTP errors
raised by ``GistClient`` are converted at this boundary.

``FetchGistRepository`` talks to GitHub through ``GistClient`` on worker
threads.  ``memory.MockGistRepository`` is the in-memory twin.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from ..config import Config
from ..converters.markdown import decode_result, encode
from ..core.async_utils import run_sync_limited
from ..core.client import GistClient, GistDocument
from ..errors import GistmarksError, NotFound, VersionConflict
from ..result import Result, failure, success
from ..tree.models import Root
from ..tree.operations import create_root

logger = logging.getLogger(__name__)


class GistRepository(Protocol):
    """Contract shared by the GitHub-backed and in-memory repositories."""

    gist_id: str
    etag: str | None
    revision_time: datetime | None

    async def read(self) -> Result[Root]:
        """Fetch and decode the bookmark file; refresh the held ETag."""
        ...  # pragma: no cover

    async def update(
        self, root: Root, description: str | None = None
    ) -> Result[Root]:
        """Encode and write *root* if the remote is still at our ETag.

        Fails with ``VersionConflict`` (writing nothing) when no ETag is
        held or the remote moved on.
        """
        ...  # pragma: no cover

    async def has_remote_changes(self) -> Result[bool]:
        """Whether the remote version differs from the held ETag."""
        ...  # pragma: no cover


class FetchGistRepository:
    """``GistRepository`` backed by the GitHub REST API.

    Args:
        config: Client configuration (file name, description).
        gist_id: The bound gist.
        backend: ``GistClient`` to use; one is built from *config* if
            omitted.
        etag: Initially held version token.
    """

    def __init__(
        self,
        config: Config,
        gist_id: str,
        backend: GistClient | None = None,
        etag: str | None = None,
    ) -> None:
        self.config = config
        self.gist_id = gist_id
        self.filename = config.filename
        self.etag = etag
        self.revision_time: datetime | None = None
        self._client = backend or GistClient(config)

    def _remember(self, document: GistDocument) -> None:
        self.etag = document.etag
        self.revision_time = document.updated_at

    async def read(self) -> Result[Root]:
        try:
            document = await run_sync_limited(self._client.get_gist, self.gist_id)
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
            logger.debug("Read gist %s at %s", self.gist_id, self.etag)
        return result

    async def update(
        self, root: Root, description: str | None = None
    ) -> Result[Root]:
        if self.etag is None:
            return failure(
                VersionConflict("No version token held; read the gist first")
            )
        try:
            # The gist API does not enforce If-Match on every deployment,
            # so check the version first and never write over a newer one.
            changed = await run_sync_limited(
                self._client.head_gist, self.gist_id, self.etag
            )
            if changed:
                return failure(
                    VersionConflict(
                        f"Gist {self.gist_id} changed remotely",
                        expected=self.etag,
                    )
                )
            document = await run_sync_limited(
                self._client.update_gist,
                self.gist_id,
                self.filename,
                encode(root),
                etag=self.etag,
                description=description,
            )
        except GistmarksError as exc:
            return failure(exc)

        self._remember(document)
        logger.info("Updated gist %s", self.gist_id)
        return success(root)

    async def has_remote_changes(self) -> Result[bool]:
        try:
            changed = await run_sync_limited(
                self._client.head_gist, self.gist_id, self.etag
            )
        except GistmarksError as exc:
            return failure(exc)
        return success(changed)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        config: Config,
        root: Root | None = None,
        *,
        backend: GistClient | None = None,
    ) -> Result[FetchGistRepository]:
        """Create a new private gist holding *root* (or an empty tree)."""
        client = backend or GistClient(config)
        try:
            document = await run_sync_limited(
                client.create_gist,
                config.filename,
                encode(root or create_root()),
                description=config.description,
            )
        except GistmarksError as exc:
            return failure(exc)
        repo = cls(config, document.gist_id, client)
        repo._remember(document)
        return success(repo)

    @classmethod
    async def exists(
        cls,
        config: Config,
        gist_id: str,
        *,
        backend: GistClient | None = None,
    ) -> Result[bool]:
        client = backend or GistClient(config)
        try:
            await run_sync_limited(client.get_gist, gist_id)
        except NotFound:
            return success(False)
        except GistmarksError as exc:
            return failure(exc)
        return success(True)

    @classmethod
    async def find_by_filename(
        cls,
        config: Config,
        *,
        backend: GistClient | None = None,
    ) -> Result[str | None]:
        """Id of the first of the user's gists holding the bookmark file."""
        client = backend or GistClient(config)
        try:
            gist_id = await run_sync_limited(
                client.find_gist_by_filename, config.filename
            )
        except GistmarksError as exc:
            return failure(exc)
        return success(gist_id)
