"""Error taxonomy for gistmarks.

Errors fall into a small set of categories so callers can branch on the
kind of failure rather than on message text:

- ``TransportError``: network, DNS, timeout or unexpected server status.
  Retryable by the caller.
- ``Unauthorized`` / ``Forbidden``: credential problems.  Never retried
  automatically; the user has to re-authenticate.
- ``NotFound``: the bound gist (or the bookmark file inside it) is gone.
- ``VersionConflict``: the remote moved since our version token was
  obtained.  Retried by re-running read -> merge -> update.
- ``ParseError``: the persisted Markdown is malformed.
- ``ValidationError``: an operation received invalid input.
- ``UnresolvedConflictsError``: a merge produced conflicts that need a
  user decision before anything may be persisted.

The repository and orchestrator hand these out as ``Result`` failure
values; they are exceptions so the HTTP layer can raise them internally.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .sync.models import MergeConflict


class GistmarksError(Exception):
    """Base class for all gistmarks errors."""


class TransportError(GistmarksError):
    """Network failure or unexpected response from the remote store."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class Unauthorized(GistmarksError):
    """The access token was rejected (HTTP 401)."""


class Forbidden(GistmarksError):
    """The access token lacks permission for the gist (HTTP 403)."""


class NotFound(GistmarksError):
    """The gist or the bookmark file inside it does not exist."""


class VersionConflict(GistmarksError):
    """The remote document changed since the held version token."""

    def __init__(
        self,
        message: str = "Remote gist changed since last read",
        expected: str | None = None,
        actual: str | None = None,
    ):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ParseError(GistmarksError):
    """Malformed bookmark Markdown.

    Attributes:
        line_number: 1-based line number of the offending line.
        line: The offending line, verbatim.
    """

    def __init__(self, message: str, line_number: int, line: str):
        super().__init__(f"Line {line_number}: {message}: {line!r}")
        self.reason = message
        self.line_number = line_number
        self.line = line


class ValidationError(GistmarksError):
    """Invalid input to a tree operation."""


class UnresolvedConflictsError(GistmarksError):
    """A merge left conflicts that require user resolution."""

    def __init__(
        self,
        conflicts: Sequence[MergeConflict],
        message: str | None = None,
    ):
        super().__init__(
            message
            or f"{len(conflicts)} unresolved conflict(s) require resolution"
        )
        self.conflicts = list(conflicts)


# ---------------------------------------------------------------------------
# User-facing descriptions
# ---------------------------------------------------------------------------

_CORRECTIVE_ACTIONS: dict[type[GistmarksError], tuple[str, str]] = {
    TransportError: (
        "transport_error",
        "Check your network connection and retry.",
    ),
    Unauthorized: (
        "unauthorized",
        "Re-authenticate: set a valid GITHUB_TOKEN with the 'gist' scope.",
    ),
    Forbidden: (
        "forbidden",
        "The token cannot access this gist. Check ownership and token scopes.",
    ),
    NotFound: (
        "not_found",
        "The gist no longer exists. Run 'gistmarks init' to bind a new one.",
    ),
    VersionConflict: (
        "version_conflict",
        "The gist changed remotely. Run 'gistmarks sync' and retry.",
    ),
    ParseError: (
        "parse_error",
        "Fix the bookmark Markdown in the gist at the reported line.",
    ),
    ValidationError: (
        "validation_error",
        "Correct the input and retry.",
    ),
    UnresolvedConflictsError: (
        "merge_conflict",
        "Resolve the conflicts with 'gistmarks resolve' before retrying.",
    ),
}


def describe_error(error: BaseException) -> tuple[str, str]:
    """Map an error to ``(error_type, corrective_action)`` for display.

    Unknown exception types map to ``("internal_error", ...)``.
    """
    for cls in type(error).__mro__:
        if cls in _CORRECTIVE_ACTIONS:
            return _CORRECTIVE_ACTIONS[cls]
    return ("internal_error", "Retry with --debug and report the log.")


def format_error(error: BaseException) -> str:
    """Render an error with its corrective action on a second paragraph."""
    error_type, action = describe_error(error)
    return f"Error ({error_type}): {error}\n\nAction: {action}"
