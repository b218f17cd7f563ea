"""
YAML configuration files for gistmarks.

Config files are looked up by convention (explicit path, project, user),
may pull in other files with ``!include`` and reference environment
variables as ``${VAR}`` or ``${VAR:-default}``.  When several files exist
they are merged section by section: a key set in a higher-precedence file
wins, keys it does not mention come from the lower ones.  A project file
can therefore change ``sync.poll_interval`` while the token stays in the
user file.

Usage:
    from gistmarks.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "GISTMARKS_CONFIG"
PROJECT_CONFIG = Path(".gistmarks") / "config.yml"
USER_CONFIG = Path(".config") / "gistmarks" / "config.yml"

_VAR_REF = re.compile(r"\$\{(?P<name>[^}:]+?)(?::-(?P<default>.*?))?\}")


# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` references in *value*.

    An unset ``${VAR}`` expands to an empty string.  The default applies
    when the variable is unset or empty.
    """

    def expand(match: re.Match) -> str:
        return os.environ.get(match["name"]) or match["default"] or ""

    return _VAR_REF.sub(expand, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {key: _interpolate_recursive(item) for key, item in obj.items()}
    if isinstance(obj, list):
        return list(map(_interpolate_recursive, obj))
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    return obj


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader that understands ``!include <path>``.

    Relative include paths resolve against the including file.  The chain
    of files being loaded travels with each loader so a file including
    itself, directly or not, is reported instead of recursing forever.
    """

    def __init__(self, stream, chain: tuple[Path, ...] = ()) -> None:
        super().__init__(stream)
        self.chain = chain

    def include(self, node: yaml.ScalarNode) -> Any:
        target = Path(self.construct_scalar(node)).expanduser()
        current = self.chain[-1]
        if not target.is_absolute():
            target = current.parent / target
        target = target.resolve()

        if target in self.chain:
            cycle = " -> ".join(str(p) for p in (*self.chain, target))
            raise ValueError(f"Circular include detected: {cycle}")
        if not target.is_file():
            raise FileNotFoundError(
                f"Include file not found: {target} (referenced from {current})"
            )
        return _load_yaml_with_includes(target, _chain=self.chain)


ConfigLoader.add_constructor("!include", ConfigLoader.include)


def _load_yaml_with_includes(path: Path, *, _chain: tuple[Path, ...] = ()) -> Any:
    path = Path(path).resolve()
    with path.open(encoding="utf-8") as fh:
        loader = ConfigLoader(fh, chain=(*_chain, path))
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Existing config files, highest precedence first.

    1. ``$GISTMARKS_CONFIG``
    2. ``./.gistmarks/config.yml``
    3. ``~/.config/gistmarks/config.yml``
    """
    candidates = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())
    candidates.append(Path.cwd() / PROJECT_CONFIG)
    candidates.append(Path.home() / USER_CONFIG)
    return [path for path in candidates if path.exists()]


_STARTER_CONFIG = """\
# gistmarks configuration
#
# The GitHub token is best kept in the environment (GITHUB_TOKEN) or a
# .env file; ${VAR:-default} references are expanded below.
#
# gist:
#   token: ${GITHUB_TOKEN}
#   gist_id: null
#   filename: bookmarks.md
#   api_url: https://api.github.com
#
# sync:
#   poll_interval: 10
#   max_retries: 3
#   merge_strategy: timestamp-based
#   state_dir: .gistmarks
#
# logging:
#   level: INFO
#   file: null
#   format: text
"""


def resolve_config_path() -> Path:
    """The config file in effect, or the project path if there is none."""
    found = discover_config_files()
    return found[0] if found else Path.cwd() / PROJECT_CONFIG


def ensure_config(target: Path | None = None) -> Path:
    """Return the config file in effect, writing a starter file if none exists.

    The starter file is all comments, so it changes no setting.
    """
    found = discover_config_files()
    if found:
        logger.debug("Using existing config file %s", found[0])
        return found[0]

    path = target or resolve_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def _merge_sections(base: dict[str, Any], override: dict[str, Any]) -> None:
    for section, values in override.items():
        current = base.get(section)
        if isinstance(current, dict) and isinstance(values, dict):
            base[section] = {**current, **values}
        else:
            base[section] = values


def load_hierarchical_config() -> dict[str, Any]:
    """Load every discovered config file and merge them.

    Files are applied from lowest to highest precedence.  Environment
    references are expanded once, after the merge.  No config files means
    an empty dict.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except (OSError, ValueError, yaml.YAMLError):
            logger.error("Failed to load config file %s", path)
            raise
        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )
            continue
        _merge_sections(merged, data)

    return _interpolate_recursive(merged)
