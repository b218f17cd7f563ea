"""Startup and shutdown of a command line session."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from .config import load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import UnifiedConfig, build_config, yaml_fallbacks
from .core.async_utils import init_semaphore, run_sync
from .core.client import GistClient
from .logger import setup_logging
from .sync.engine import SyncEngine

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


@asynccontextmanager
async def engine_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[SyncEngine]:
    """
    Build a ready-to-use ``SyncEngine`` and tear it down afterwards.

    On startup:
    - Load .env (so values are available for env lookups and YAML interpolation)
    - Load the YAML config file if present (as fallback values)
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Configure logging
    - Validate the GitHub token (skipped in mock mode)

    On shutdown:
    - Stop the change detector

    Args:
        config_overrides: Values from the CLI (token, gist_id, filename,
            debug, use_mock, log_file).

    Raises:
        RuntimeError: If configuration is invalid or GitHub rejects the token.
    """
    overrides = config_overrides or {}

    try:
        load_dotenv()

        unified = UnifiedConfig()
        fallbacks: dict[str, Any] | None = None
        config_files = discover_config_files()
        if config_files:
            unified = build_config(load_hierarchical_config())
            fallbacks = {
                k: v for k, v in yaml_fallbacks(unified).items() if v is not None
            }

        setup_logging(
            debug=overrides.get("debug", False),
            log_file=overrides.get("log_file") or unified.logging.file,
            debug_format=unified.logging.format,
            level=unified.logging.level,
        )
        if config_files:
            logger.info("Configuration loaded from: %s", config_files[0])

        config = load_config(
            token=overrides.get("token"),
            gist_id=overrides.get("gist_id"),
            filename=overrides.get("filename"),
            debug=overrides.get("debug", False),
            use_mock=overrides.get("use_mock", False),
            yaml_fallbacks=fallbacks,
        )
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        raise RuntimeError(f"Configuration error: {e}") from e

    client: GistClient | None = None
    if not config.use_mock:
        client = GistClient(config)
        try:
            login = await run_sync(client.validate_connection)
        except Exception as e:
            logger.error("Failed to connect to GitHub: %s", e)
            _stderr_print("ERROR: GitHub connection failed.")
            _stderr_print(f"  {e}")
            _stderr_print("  Check GITHUB_TOKEN and its 'gist' scope.")
            raise RuntimeError(f"GitHub connection failed: {e}") from e
        logger.info("Authenticated to GitHub as %s", login)

    init_semaphore(config.max_parallel_requests)
    engine = SyncEngine(config, backend=client)
    try:
        yield engine
    finally:
        engine.close()
        logger.debug("Session closed")
