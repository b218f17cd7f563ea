"""Blocking GitHub Gist REST client.

All calls are synchronous ``requests`` calls; async callers go through
``core.async_utils.run_sync_limited``.  HTTP failures are raised as the
``gistmarks.errors`` taxonomy so the repository layer can turn them into
``Result`` values.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any

import requests
from pydantic import BaseModel

from ..config import Config
from ..errors import (
    Forbidden,
    NotFound,
    TransportError,
    Unauthorized,
    VersionConflict,
)
from ..tree.metadata import parse_timestamp

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
TIMEOUT = (10, 60)


class GistDocument(BaseModel):
    """A fetched gist revision.

    Attributes:
        gist_id: The gist id.
        etag: Version token from the ``ETag`` response header.
        files: File name -> content.
        updated_at: When the gist was last changed.
        revision: Commit sha of the latest revision, when reported.
        description: Gist description.
    """

    gist_id: str
    etag: str
    files: dict[str, str]
    updated_at: datetime
    revision: str | None = None
    description: str | None = None

    model_config = {"frozen": True}


class GistClient:
    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = config.api_url.rstrip("/")

    @property
    def session(self) -> requests.Session:
        """The current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {self.config.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
            }
        )
        return session

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        allowed: tuple[int, ...] = (200,),
        **kwargs: Any,
    ) -> requests.Response:
        """Send one request and map failures onto the error taxonomy."""
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self._get_session().request(
                method, url, timeout=TIMEOUT, **kwargs
            )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc

        status = response.status_code
        if status in allowed:
            return response

        message = f"{method} {url} returned HTTP {status}"
        match status:
            case 401:
                raise Unauthorized(f"{message}: bad or expired token")
            case 403:
                raise Forbidden(f"{message}: access denied")
            case 404:
                raise NotFound(f"{message}: gist not found")
            case 409 | 412:
                raise VersionConflict(
                    f"{message}: remote changed",
                    expected=kwargs.get("headers", {}).get("If-Match"),
                    actual=response.headers.get("ETag"),
                )
            case _:
                raise TransportError(message, status_code=status)

    @staticmethod
    def _etag(response: requests.Response) -> str:
        etag = response.headers.get("ETag")
        if not etag:
            raise TransportError(
                "Response carried no ETag header", response.status_code
            )
        return etag

    def _document(self, response: requests.Response) -> GistDocument:
        etag = self._etag(response)
        try:
            data = response.json()
            files: dict[str, str] = {}
            for name, info in (data.get("files") or {}).items():
                content = info.get("content")
                if info.get("truncated") and info.get("raw_url"):
                    content = self._request("GET", info["raw_url"]).text
                files[name] = content or ""

            history = data.get("history") or []
            return GistDocument(
                gist_id=data["id"],
                etag=etag,
                files=files,
                updated_at=parse_timestamp(data["updated_at"]),
                revision=history[0].get("version") if history else None,
                description=data.get("description"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise TransportError(
                f"Malformed gist response: {exc}", response.status_code
            ) from exc

    # ------------------------------------------------------------------
    # Gist operations
    # ------------------------------------------------------------------

    def get_gist(self, gist_id: str) -> GistDocument:
        """Fetch a gist with the content of all its files."""
        return self._document(self._request("GET", f"/gists/{gist_id}"))

    def head_gist(self, gist_id: str, etag: str | None) -> bool:
        """
        Cheap change check.

        Sends ``If-None-Match`` with *etag*; a 304 means unchanged.

        Returns:
            True if the remote has a different version than *etag*.
        """
        headers = {"If-None-Match": etag} if etag else {}
        response = self._request(
            "HEAD",
            f"/gists/{gist_id}",
            allowed=(200, 304),
            headers=headers,
        )
        if response.status_code == 304:
            return False
        return response.headers.get("ETag") != etag

    def update_gist(
        self,
        gist_id: str,
        filename: str,
        content: str,
        etag: str | None = None,
        description: str | None = None,
    ) -> GistDocument:
        """
        Replace the content of one file, conditioned on *etag*.

        Raises:
            VersionConflict: If the server rejects the ``If-Match``
                precondition.
        """
        payload: dict[str, Any] = {"files": {filename: {"content": content}}}
        if description is not None:
            payload["description"] = description
        headers = {"If-Match": etag} if etag else {}
        response = self._request(
            "PATCH", f"/gists/{gist_id}", json=payload, headers=headers
        )
        return self._document(response)

    def create_gist(
        self,
        filename: str,
        content: str,
        description: str = "",
        public: bool = False,
    ) -> GistDocument:
        """Create a new gist holding one file."""
        payload = {
            "description": description,
            "public": public,
            "files": {filename: {"content": content}},
        }
        response = self._request(
            "POST", "/gists", allowed=(200, 201), json=payload
        )
        document = self._document(response)
        logger.info("Created gist %s", document.gist_id)
        return document

    def delete_gist(self, gist_id: str) -> None:
        self._request("DELETE", f"/gists/{gist_id}", allowed=(204,))
        logger.info("Deleted gist %s", gist_id)

    def list_gists(self) -> list[dict[str, Any]]:
        """
        List the authenticated user's gists (all pages).

        Returns:
            List of dicts with keys: id, description, files (names),
            updated_at.
        """
        gists: list[dict[str, Any]] = []
        url: str | None = "/gists?per_page=100"
        while url:
            response = self._request("GET", url)
            for item in response.json():
                gists.append(
                    {
                        "id": item["id"],
                        "description": item.get("description"),
                        "files": sorted((item.get("files") or {}).keys()),
                        "updated_at": item.get("updated_at"),
                    }
                )
            url = response.links.get("next", {}).get("url")
        return gists

    def find_gist_by_filename(self, filename: str) -> str | None:
        """Return the id of the first gist containing *filename*, if any."""
        for gist in self.list_gists():
            if filename in gist["files"]:
                return gist["id"]
        return None

    def validate_connection(self) -> str:
        """
        Validate the token by calling ``GET /user``.
        Returns the login name if successful.
        """
        return str(self._request("GET", "/user").json().get("login", ""))
