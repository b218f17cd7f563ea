"""Configuration for the gistmarks client.

Reads GitHub and sync settings from CLI args, environment variables,
.env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    GITHUB_TOKEN: GitHub token with the 'gist' scope (required unless --mock)
    GISTMARKS_GIST_ID: Gist to bind to (optional; otherwise found or created)
    GISTMARKS_FILENAME: Bookmark file inside the gist (default: bookmarks.md)
    GISTMARKS_API_URL: GitHub API base URL (default: https://api.github.com)
    GISTMARKS_POLL_INTERVAL: Remote change poll interval in seconds (1-3600, default: 10)
    GISTMARKS_MAX_RETRIES: Retries on version conflict (0-10, default: 3)
    GISTMARKS_STATE_DIR: Local state directory (default: .gistmarks)
    GISTMARKS_MERGE_STRATEGY: timestamp-based | local-wins | remote-wins
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

MERGE_STRATEGIES = ("timestamp-based", "local-wins", "remote-wins")
DEFAULT_FILENAME = "bookmarks.md"
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_DESCRIPTION = "BookMarkDown - Bookmark Collection"


@dataclass
class Config:
    token: str
    gist_id: str | None = None
    filename: str = DEFAULT_FILENAME
    api_url: str = DEFAULT_API_URL
    poll_interval: int = 10
    max_retries: int = 3
    state_dir: str = ".gistmarks"
    merge_strategy: str = "timestamp-based"
    description: str = DEFAULT_DESCRIPTION
    debug: bool = False
    use_mock: bool = False
    max_parallel_requests: int = 2


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the API URL, filename, token or numeric limits are
            invalid.
    """
    config.api_url = config.api_url.strip()

    if not config.api_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid API URL '{config.api_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.api_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid API URL '{config.api_url}': URL must include a hostname"
        )

    config.api_url = config.api_url.removesuffix("/")

    if not config.use_mock and not config.token.strip():
        raise ValueError(
            "GitHub token cannot be empty. Set GITHUB_TOKEN environment variable."
        )

    if not config.filename.strip() or "/" in config.filename:
        raise ValueError(
            f"Invalid filename '{config.filename}': must be a plain file name"
        )

    if not (1 <= config.poll_interval <= 3600):
        raise ValueError(
            f"Invalid poll interval {config.poll_interval}: must be between 1 and 3600 seconds"
        )

    if not (0 <= config.max_retries <= 10):
        raise ValueError(
            f"Invalid max retries {config.max_retries}: must be between 0 and 10"
        )

    if config.merge_strategy not in MERGE_STRATEGIES:
        raise ValueError(
            f"Invalid merge strategy '{config.merge_strategy}': must be one of {', '.join(MERGE_STRATEGIES)}"
        )

    if config.use_mock:
        logger.warning(
            "Using in-memory mock gist store: nothing is written to GitHub."
        )


def _int_setting(
    env_key: str, fb: dict, fb_key: str, default: int, low: int, high: int
) -> int:
    raw = os.getenv(env_key)
    if raw is not None:
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(
                f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
            ) from None
        if not (low <= value <= high):
            raise ValueError(
                f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
            )
        return value
    if fb_key in fb:
        return int(fb[fb_key])
    return default


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def load_config(
    token: str | None = None,
    gist_id: str | None = None,
    filename: str | None = None,
    debug: bool = False,
    use_mock: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        token: Override GitHub token.
        gist_id: Override gist id.
        filename: Override bookmark file name.
        debug: Enable debug logging (CLI flag).
        use_mock: Use the in-memory gist store instead of GitHub.
        yaml_fallbacks: Flattened values from the YAML config file
            (``gist`` and ``sync`` sections).

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the token is missing (and not in mock mode) or any
            value is out of range.
    """
    fb = yaml_fallbacks or {}

    if not use_mock:
        env_mock = _get_bool_env("GISTMARKS_MOCK")
        use_mock = bool(
            env_mock if env_mock is not None else fb.get("use_mock", False)
        )

    final_token = token or os.getenv("GITHUB_TOKEN") or fb.get("token")
    if not final_token and not use_mock:
        raise ValueError(
            "GitHub token not found. Set GITHUB_TOKEN environment variable, "
            "pass --token CLI argument, or add 'token' to config.yml."
        )

    final_gist_id = gist_id or os.getenv("GISTMARKS_GIST_ID") or fb.get("gist_id")
    final_filename = (
        filename
        or os.getenv("GISTMARKS_FILENAME")
        or fb.get("filename")
        or DEFAULT_FILENAME
    )
    final_api_url = (
        os.getenv("GISTMARKS_API_URL") or fb.get("api_url") or DEFAULT_API_URL
    )
    final_state_dir = (
        os.getenv("GISTMARKS_STATE_DIR") or fb.get("state_dir") or ".gistmarks"
    )
    final_strategy = (
        os.getenv("GISTMARKS_MERGE_STRATEGY")
        or fb.get("merge_strategy")
        or "timestamp-based"
    )
    final_description = fb.get("description") or DEFAULT_DESCRIPTION

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("GISTMARKS_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    config = Config(
        token=(final_token or "").strip(),
        gist_id=final_gist_id.strip() if final_gist_id else None,
        filename=final_filename.strip(),
        api_url=final_api_url,
        poll_interval=_int_setting(
            "GISTMARKS_POLL_INTERVAL", fb, "poll_interval", 10, 1, 3600
        ),
        max_retries=_int_setting(
            "GISTMARKS_MAX_RETRIES", fb, "max_retries", 3, 0, 10
        ),
        state_dir=final_state_dir,
        merge_strategy=final_strategy.strip().lower(),
        description=final_description,
        debug=final_debug,
        use_mock=use_mock,
        max_parallel_requests=int(fb.get("max_parallel_requests", 2)),
    )

    validate_config(config)

    return config
