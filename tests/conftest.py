"""Shared pytest fixtures for gistmarks tests."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from dotenv import load_dotenv

from gistmarks.config import Config
from gistmarks.sync.memory import MemoryGistStore
from gistmarks.sync.state import SyncState

load_dotenv()

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a real GitHub token",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring the live GitHub API"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


@pytest.fixture
def mock_config(tmp_path):
    """Config for talking to (a mocked) GitHub."""
    return Config(token="test-token", state_dir=str(tmp_path / "state"))


@pytest.fixture
def memory_config(tmp_path):
    """Config for the in-memory gist store."""
    return Config(
        token="test-token",
        use_mock=True,
        state_dir=str(tmp_path / "state"),
    )


@pytest.fixture
def memory_store():
    """Empty in-memory gist store on the real clock."""
    return MemoryGistStore()


@pytest.fixture
def fixed_store():
    """In-memory gist store whose revisions start at ``T0``.

    Each write advances the revision time by one millisecond.
    """
    return MemoryGistStore(clock=lambda: T0)


@pytest.fixture
def sync_state(tmp_path):
    return SyncState(tmp_path / "state")


@pytest.fixture
def mock_gist_client(mock_config):
    """Create a mock GistClient instance for testing."""
    from gistmarks.core.client import GistClient

    client = MagicMock(spec=GistClient)
    client.config = mock_config
    return client


@pytest.fixture
def gist_document():
    """Factory fixture for ``GistDocument`` values."""

    def _create(
        content,
        gist_id="g1",
        etag='"v1"',
        updated_at=T0,
        filename="bookmarks.md",
    ):
        from gistmarks.core.client import GistDocument

        return GistDocument(
            gist_id=gist_id,
            etag=etag,
            files={filename: content},
            updated_at=updated_at,
        )

    return _create

