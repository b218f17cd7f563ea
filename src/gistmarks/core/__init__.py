"""GitHub API client and async bridging helpers."""

from .client import GistClient, GistDocument

__all__ = ["GistClient", "GistDocument"]
