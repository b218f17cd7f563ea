"""Tests for the gist repositories and the in-memory gist store.

Covers:
- MemoryGistStore ids, ETags, revision times and stale-write rejection
- MockGistRepository read/update/has_remote_changes and discovery
- FetchGistRepository over a mocked GistClient: ETag bookkeeping,
  HEAD preflight before writing, error conversion to Result failures
"""

from datetime import datetime, timedelta, timezone

import pytest

from gistmarks.converters.markdown import encode
from gistmarks.errors import (
    NotFound,
    ParseError,
    TransportError,
    Unauthorized,
    VersionConflict,
)
from gistmarks.sync.memory import MockGistRepository
from gistmarks.sync.repository import FetchGistRepository
from gistmarks.tree import operations as ops

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)

WORK = "# Work\n\n## Q1\n\n- [Docs](https://docs.example)"


def _work_root():
    root = ops.add_category(ops.create_root(), "Work").unwrap()
    return ops.add_bundle(root, "Work", "Q1").unwrap()


# ---------------------------------------------------------------------------
# MemoryGistStore
# ---------------------------------------------------------------------------


class TestMemoryGistStore:
    """The in-memory stand-in for the gist API."""

    def test_create_assigns_id_and_etag(self, memory_store):
        first = memory_store.create("bookmarks.md", WORK, "Bookmarks")
        second = memory_store.create("other.md", "")

        assert first.gist_id == "mem0001"
        assert second.gist_id == "mem0002"
        assert first.etag == '"v1"'
        assert first.description == "Bookmarks"
        assert memory_store.get("mem0001").files == {"bookmarks.md": WORK}

    def test_put_with_current_etag(self, fixed_store):
        created = fixed_store.create("bookmarks.md", WORK)

        updated = fixed_store.put(created.gist_id, "bookmarks.md", "# Home", '"v1"')

        assert updated.etag != created.etag
        assert updated.files["bookmarks.md"] == "# Home"
        assert updated.updated_at == T0 + timedelta(milliseconds=1)

    def test_put_with_stale_etag_rejected(self, memory_store):
        created = memory_store.create("bookmarks.md", WORK)
        memory_store.put(created.gist_id, "bookmarks.md", "# A", created.etag)

        with pytest.raises(VersionConflict) as exc_info:
            memory_store.put(created.gist_id, "bookmarks.md", "# B", created.etag)

        assert exc_info.value.expected == created.etag
        assert memory_store.get(created.gist_id).files["bookmarks.md"] == "# A"

    def test_unknown_gist(self, memory_store):
        with pytest.raises(NotFound):
            memory_store.get("nope")

    def test_find_and_delete(self, memory_store):
        created = memory_store.create("bookmarks.md", WORK)

        assert memory_store.find_by_filename("bookmarks.md") == created.gist_id
        assert memory_store.find_by_filename("missing.md") is None

        memory_store.delete(created.gist_id)
        assert memory_store.find_by_filename("bookmarks.md") is None


# ---------------------------------------------------------------------------
# MockGistRepository
# ---------------------------------------------------------------------------


class TestMockGistRepository:
    """In-memory repository contract."""

    async def test_create_holds_etag(self, memory_config, memory_store):
        repo = (
            await MockGistRepository.create(
                memory_config, _work_root(), backend=memory_store
            )
        ).unwrap()

        assert repo.etag == '"v1"'
        assert repo.revision_time is not None
        assert "# Work" in memory_store.get(repo.gist_id).files["bookmarks.md"]

    async def test_read_decodes_and_refreshes_etag(
        self, memory_config, fixed_store
    ):
        created = fixed_store.create("bookmarks.md", WORK)
        repo = MockGistRepository(memory_config, created.gist_id, fixed_store)

        root = (await repo.read()).unwrap()

        assert root.categories[0].name == "Work"
        assert root.metadata.last_modified == T0
        assert repo.etag == created.etag
        assert repo.revision_time == T0

    async def test_read_missing_file(self, memory_config, memory_store):
        created = memory_store.create("other.md", WORK)
        repo = MockGistRepository(memory_config, created.gist_id, memory_store)

        result = await repo.read()

        assert isinstance(result.error, NotFound)

    async def test_read_malformed_keeps_etag(self, memory_config, memory_store):
        created = memory_store.create("bookmarks.md", "## Orphan")
        repo = MockGistRepository(memory_config, created.gist_id, memory_store)

        result = await repo.read()

        assert isinstance(result.error, ParseError)
        assert repo.etag is None

    async def test_update_without_etag(self, memory_config, memory_store):
        created = memory_store.create("bookmarks.md", WORK)
        repo = MockGistRepository(memory_config, created.gist_id, memory_store)

        result = await repo.update(_work_root())

        assert isinstance(result.error, VersionConflict)
        assert memory_store.get(created.gist_id).etag == created.etag

    async def test_concurrent_writer_rejected(self, memory_config, memory_store):
        """Two repositories holding the same ETag: only the first write lands."""
        created = memory_store.create("bookmarks.md", WORK)
        first = MockGistRepository(
            memory_config, created.gist_id, memory_store, etag=created.etag
        )
        second = MockGistRepository(
            memory_config, created.gist_id, memory_store, etag=created.etag
        )

        ok = await first.update(_work_root(), description="mine")
        stale = await second.update(ops.create_root())

        assert ok.success
        assert isinstance(stale.error, VersionConflict)
        stored = memory_store.get(created.gist_id)
        assert stored.files["bookmarks.md"] == encode(_work_root())
        assert stored.description == "mine"
        assert first.etag == stored.etag

    async def test_has_remote_changes(self, memory_config, memory_store):
        created = memory_store.create("bookmarks.md", WORK)
        repo = MockGistRepository(
            memory_config, created.gist_id, memory_store, etag=created.etag
        )

        assert (await repo.has_remote_changes()).unwrap() is False
        memory_store.put(created.gist_id, "bookmarks.md", "# X", created.etag)
        assert (await repo.has_remote_changes()).unwrap() is True

    async def test_has_remote_changes_gist_gone(self, memory_config, memory_store):
        repo = MockGistRepository(memory_config, "nope", memory_store)

        assert isinstance((await repo.has_remote_changes()).error, NotFound)

    async def test_discovery(self, memory_config, memory_store):
        created = memory_store.create("bookmarks.md", WORK)

        exists = await MockGistRepository.exists(
            memory_config, created.gist_id, backend=memory_store
        )
        missing = await MockGistRepository.exists(
            memory_config, "nope", backend=memory_store
        )
        found = await MockGistRepository.find_by_filename(
            memory_config, backend=memory_store
        )

        assert exists.unwrap() is True
        assert missing.unwrap() is False
        assert found.unwrap() == created.gist_id


# ---------------------------------------------------------------------------
# FetchGistRepository
# ---------------------------------------------------------------------------


class TestFetchGistRepository:
    """GitHub-backed repository over a mocked client."""

    @pytest.fixture
    def repo(self, mock_config, mock_gist_client):
        return FetchGistRepository(mock_config, "g1", backend=mock_gist_client)

    async def test_read(self, repo, mock_gist_client, gist_document):
        mock_gist_client.get_gist.return_value = gist_document(WORK, etag='"v7"')

        root = (await repo.read()).unwrap()

        mock_gist_client.get_gist.assert_called_once_with("g1")
        assert root.categories[0].bundles[0].bookmarks[0].title == "Docs"
        assert repo.etag == '"v7"'
        assert repo.revision_time == T0

    async def test_read_transport_error(self, repo, mock_gist_client):
        mock_gist_client.get_gist.side_effect = TransportError("down", 502)

        result = await repo.read()

        assert isinstance(result.error, TransportError)
        assert repo.etag is None

    async def test_read_missing_file(self, repo, mock_gist_client, gist_document):
        mock_gist_client.get_gist.return_value = gist_document(
            WORK, filename="notes.md"
        )

        result = await repo.read()

        assert isinstance(result.error, NotFound)
        assert "bookmarks.md" in str(result.error)

    async def test_update_requires_etag(self, repo, mock_gist_client):
        result = await repo.update(_work_root())

        assert isinstance(result.error, VersionConflict)
        mock_gist_client.update_gist.assert_not_called()

    async def test_update(self, repo, mock_gist_client, gist_document):
        repo.etag = '"v1"'
        mock_gist_client.head_gist.return_value = False
        mock_gist_client.update_gist.return_value = gist_document(
            WORK, etag='"v2"'
        )
        root = _work_root()

        result = await repo.update(root, description="Bookmarks")

        assert result.unwrap() is root
        mock_gist_client.head_gist.assert_called_once_with("g1", '"v1"')
        mock_gist_client.update_gist.assert_called_once_with(
            "g1",
            "bookmarks.md",
            encode(root),
            etag='"v1"',
            description="Bookmarks",
        )
        assert repo.etag == '"v2"'

    async def test_update_refused_when_remote_moved(self, repo, mock_gist_client):
        repo.etag = '"v1"'
        mock_gist_client.head_gist.return_value = True

        result = await repo.update(_work_root())

        assert isinstance(result.error, VersionConflict)
        assert result.error.expected == '"v1"'
        mock_gist_client.update_gist.assert_not_called()
        assert repo.etag == '"v1"'

    async def test_update_server_conflict(self, repo, mock_gist_client):
        repo.etag = '"v1"'
        mock_gist_client.head_gist.return_value = False
        mock_gist_client.update_gist.side_effect = VersionConflict(
            expected='"v1"', actual='"v3"'
        )

        result = await repo.update(_work_root())

        assert isinstance(result.error, VersionConflict)
        assert repo.etag == '"v1"'

    async def test_has_remote_changes(self, repo, mock_gist_client):
        repo.etag = '"v1"'
        mock_gist_client.head_gist.return_value = True

        assert (await repo.has_remote_changes()).unwrap() is True

    async def test_has_remote_changes_unauthorized(self, repo, mock_gist_client):
        mock_gist_client.head_gist.side_effect = Unauthorized("bad token")

        result = await repo.has_remote_changes()

        assert isinstance(result.error, Unauthorized)

    async def test_create(self, mock_config, mock_gist_client, gist_document):
        mock_gist_client.create_gist.return_value = gist_document(
            "", gist_id="new1", etag='"n1"'
        )

        repo = (
            await FetchGistRepository.create(
                mock_config, backend=mock_gist_client
            )
        ).unwrap()

        assert repo.gist_id == "new1"
        assert repo.etag == '"n1"'
        args, kwargs = mock_gist_client.create_gist.call_args
        assert args[0] == "bookmarks.md"
        assert kwargs["description"] == mock_config.description

    async def test_exists(self, mock_config, mock_gist_client, gist_document):
        mock_gist_client.get_gist.side_effect = [
            gist_document(WORK),
            NotFound("gone"),
            Unauthorized("bad token"),
        ]

        found = await FetchGistRepository.exists(
            mock_config, "g1", backend=mock_gist_client
        )
        gone = await FetchGistRepository.exists(
            mock_config, "g2", backend=mock_gist_client
        )
        denied = await FetchGistRepository.exists(
            mock_config, "g3", backend=mock_gist_client
        )

        assert found.unwrap() is True
        assert gone.unwrap() is False
        assert isinstance(denied.error, Unauthorized)

    async def test_find_by_filename(self, mock_config, mock_gist_client):
        mock_gist_client.find_gist_by_filename.return_value = "g9"

        result = await FetchGistRepository.find_by_filename(
            mock_config, backend=mock_gist_client
        )

        assert result.unwrap() == "g9"
        mock_gist_client.find_gist_by_filename.assert_called_once_with(
            "bookmarks.md"
        )
