"""Unified configuration schema for gistmarks.

Defines Pydantic models for the YAML config structure with dedicated
sections for the gist binding, sync behaviour and logging. Includes an
adapter to the ``Config`` dataclass used at runtime.

Usage:
    from gistmarks.config_schema import (
        UnifiedConfig, build_config, to_legacy_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_legacy_config(unified, cli_overrides={"gist_id": "abc123"})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class GistConfig(BaseModel):
    """Remote gist binding.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    token: str | None = Field(default=None, description="GitHub token")
    gist_id: str | None = Field(default=None, description="Bound gist id")
    filename: str = Field(
        default="bookmarks.md", description="Bookmark file in the gist"
    )
    api_url: str = Field(
        default="https://api.github.com", description="GitHub API base URL"
    )
    description: str = Field(
        default="BookMarkDown - Bookmark Collection",
        description="Description used when creating a gist",
    )
    max_parallel_requests: int = Field(
        default=2,
        ge=1,
        le=20,
        description="Maximum concurrent requests to the GitHub API (1-20)",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Synchronisation behaviour."""

    poll_interval: int = Field(
        default=10,
        ge=1,
        le=3600,
        description="Seconds between remote change checks (1-3600)",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries of read-merge-write on version conflict (0-10)",
    )
    merge_strategy: Literal["timestamp-based", "local-wins", "remote-wins"] = (
        Field(default="timestamp-based", description="Merge strategy")
    )
    state_dir: str = Field(
        default=".gistmarks", description="Local sync state directory"
    )
    use_mock: bool = Field(
        default=False, description="Use the in-memory gist store"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = Field(
        default="text", description="Log line format"
    )

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has defaults, so ``UnifiedConfig()`` is always valid.
    """

    gist: GistConfig = Field(default_factory=GistConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.

    Raises:
        pydantic.ValidationError: If a value is out of range.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def yaml_fallbacks(unified: UnifiedConfig) -> dict:
    """Flatten the ``gist`` and ``sync`` sections for ``load_config()``."""
    merged = unified.gist.model_dump()
    merged.update(unified.sync.model_dump())
    return merged


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_legacy_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the ``Config`` dataclass, applying
    CLI overrides on top.

    CLI overrides dict keys: token, gist_id, filename, debug, use_mock.

    Returns:
        ``Config`` instance (NOT validated; call ``validate_config()``).
    """
    # Import here to avoid circular imports
    from .config import Config

    overrides = cli_overrides or {}

    return Config(
        token=overrides.get("token") or unified.gist.token or "",
        gist_id=overrides.get("gist_id") or unified.gist.gist_id,
        filename=overrides.get("filename") or unified.gist.filename,
        api_url=unified.gist.api_url,
        poll_interval=unified.sync.poll_interval,
        max_retries=unified.sync.max_retries,
        state_dir=unified.sync.state_dir,
        merge_strategy=unified.sync.merge_strategy,
        description=unified.gist.description,
        debug=overrides.get("debug", False),
        use_mock=overrides.get("use_mock", False) or unified.sync.use_mock,
        max_parallel_requests=unified.gist.max_parallel_requests,
    )
