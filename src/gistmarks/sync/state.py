"""Local sync bookkeeping.

Persists, per gist, what the last successful sync agreed on:

* ``last_synced`` -- the reference timestamp for the three-way merge.
* ``base`` -- the Markdown that was in the gist at that moment, used to
  tell remote nodes that changed since from nodes that did not.
* ``content_hash`` -- normalised SHA-256 of ``base`` for cheap comparison.

plus the id of the gist the collection is bound to.  Everything lives in
one JSON file, ``state.json``, under the configured state directory:

.. code-block:: json

    {
      "version": 1,
      "bound_gist_id": "abc123",
      "gists": {
        "abc123": {
          "last_synced": "2026-01-01T00:00:00.000Z",
          "content_hash": "...",
          "base": "# Work\\n..."
        }
      }
    }

The local working tree, tombstones and timestamps included, is kept next
to it in ``tree.json`` so edits survive restarts and failed pushes.

Both files are written to a temp file first and then ``os.replace()``d,
so readers never see partial data.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from ..tree.metadata import format_timestamp, parse_timestamp
from ..tree.models import EPOCH, Root

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
WORKING_COPY_FILE = "tree.json"


class SyncState:
    """Load, save, and query sync bookkeeping.

    Args:
        state_dir: Directory holding ``state.json`` (typically
            ``.gistmarks/``).  Created on first save.
    """

    def __init__(self, state_dir: Path | str) -> None:
        self._state_dir = Path(state_dir)
        self._state: dict | None = None

    @property
    def path(self) -> Path:
        return self._state_dir / STATE_FILE

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> dict:
        """Load state from disk, or an empty state if there is none.

        A corrupt file is logged and treated as empty, which only costs a
        conservative (full) merge on the next sync.
        """
        if self._state is not None:
            return self._state

        state = {"version": 1, "bound_gist_id": None, "gists": {}}
        if self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as fh:
                    state = json.load(fh)
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
        state.setdefault("gists", {})
        self._state = state
        return state

    def save(self) -> None:
        """Persist state to disk atomically."""
        self._write(self.path, self.load())

    def _write(self, target: Path, data: dict) -> None:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self._state_dir), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Working copy
    # ------------------------------------------------------------------

    @property
    def working_copy_path(self) -> Path:
        return self._state_dir / WORKING_COPY_FILE

    def save_working_copy(self, gist_id: str | None, root: Root) -> None:
        """Persist the local tree, tombstones and metadata included."""
        self._write(
            self.working_copy_path,
            {"gist_id": gist_id, "root": root.model_dump(mode="json")},
        )

    def load_working_copy(self, gist_id: str | None = None) -> Root | None:
        """Return the saved local tree.

        ``None`` if there is none, it cannot be read, or it belongs to a
        different gist than *gist_id* (when given).
        """
        if not self.working_copy_path.exists():
            return None
        try:
            with open(self.working_copy_path, encoding="utf-8") as fh:
                data = json.load(fh)
            if gist_id is not None and data.get("gist_id") not in (None, gist_id):
                return None
            return Root.model_validate(data["root"])
        except (OSError, ValueError, KeyError, PydanticValidationError) as exc:
            logger.warning("Ignoring unreadable working copy: %s", exc)
            return None

    # ------------------------------------------------------------------
    # Queries and updates
    # ------------------------------------------------------------------

    def _entry(self, gist_id: str) -> dict | None:
        return self.load()["gists"].get(gist_id)

    def get_bound_gist_id(self) -> str | None:
        return self.load().get("bound_gist_id")

    def set_bound_gist_id(self, gist_id: str | None) -> None:
        self.load()["bound_gist_id"] = gist_id
        self.save()

    def get_last_synced(self, gist_id: str) -> datetime:
        """Return the last sync time for *gist_id*, ``EPOCH`` if never."""
        entry = self._entry(gist_id)
        if not entry or not entry.get("last_synced"):
            return EPOCH
        try:
            return parse_timestamp(entry["last_synced"])
        except ValueError:
            logger.warning("Bad last_synced for gist %s; assuming never", gist_id)
            return EPOCH

    def set_last_synced(self, gist_id: str, timestamp: datetime) -> None:
        entry = self.load()["gists"].setdefault(gist_id, {})
        entry["last_synced"] = format_timestamp(timestamp)
        self.save()

    def clear_last_synced(self, gist_id: str) -> None:
        """Forget everything recorded for *gist_id*."""
        self.load()["gists"].pop(gist_id, None)
        self.save()

    def get_base(self, gist_id: str) -> str | None:
        """Markdown the gist held at the last sync, if recorded."""
        entry = self._entry(gist_id)
        return entry.get("base") if entry else None

    def get_content_hash(self, gist_id: str) -> str | None:
        entry = self._entry(gist_id)
        return entry.get("content_hash") if entry else None

    def record_sync(self, gist_id: str, timestamp: datetime, content: str) -> None:
        """Record a successful sync of *content* at *timestamp*."""
        self.load()["gists"][gist_id] = {
            "last_synced": format_timestamp(timestamp),
            "content_hash": self.content_hash(content),
            "base": content,
        }
        self.save()
        logger.debug("Recorded sync of gist %s at %s", gist_id, timestamp)

    # ------------------------------------------------------------------
    # Content hashing
    # ------------------------------------------------------------------

    @staticmethod
    def content_hash(content: str) -> str:
        """Normalised SHA-256 hex digest of *content*.

        BOM, line endings, trailing whitespace on each line and trailing
        empty lines do not affect the hash.
        """
        text = content.lstrip("\ufeff").replace("\r\n", "\n")
        lines = [line.rstrip() for line in text.split("\n")]
        while lines and lines[-1] == "":
            lines.pop()
        return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()
