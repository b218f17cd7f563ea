"""Pydantic models for the bookmark tree.

Defines the entities persisted to the gist and the value types used by the
operation API and the merge engine:

- ``NodeMetadata`` / ``RootMetadata``: per-node sync metadata.
- ``Bookmark``, ``Bundle``, ``Category``, ``Root``: the tree itself.
- ``NameKey`` / ``BookmarkKey``: content keys used to match nodes across
  two trees.
- ``BookmarkInput``, ``BookmarkUpdate``, ``BookmarkFilter``,
  ``BookmarkSearchResult``, ``BookmarkStats``: operation inputs/outputs.

All models are frozen.  Every node gets complete metadata at construction
time through default factories, so no caller has to check for it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_utc() -> datetime:
    """Current time as a timezone-aware UTC datetime (millisecond precision)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def new_bookmark_id() -> str:
    return uuid.uuid4().hex


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


class NodeMetadata(BaseModel):
    """Sync metadata carried by categories, bundles and bookmarks.

    Attributes:
        last_modified: When the node's content last changed.
        last_synced: When the node was last reconciled with the remote.
            ``EPOCH`` means never.
        is_deleted: Tombstone flag.
    """

    last_modified: datetime = Field(default_factory=now_utc)
    last_synced: datetime = EPOCH
    is_deleted: bool = False

    model_config = {"frozen": True}

    @field_validator("last_modified", "last_synced")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class RootMetadata(BaseModel):
    """Root metadata.  ``last_synced`` lives in ``SyncState``, not here."""

    last_modified: datetime = Field(default_factory=now_utc)

    model_config = {"frozen": True}

    @field_validator("last_modified")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


# ---------------------------------------------------------------------------
# Content keys
# ---------------------------------------------------------------------------


class NameKey(BaseModel):
    """Identity of a category or bundle among its siblings."""

    name: str

    model_config = {"frozen": True}


class BookmarkKey(BaseModel):
    """Identity of a bookmark for merge purposes: ``(url, title)``."""

    url: str
    title: str

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"[{self.title}]({self.url})"


# ---------------------------------------------------------------------------
# Tree nodes
# ---------------------------------------------------------------------------


def normalize_tags(tags) -> tuple[str, ...]:
    """Strip, drop empties and de-duplicate *tags* keeping first occurrence."""
    seen: dict[str, None] = {}
    for tag in tags or ():
        cleaned = str(tag).strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return tuple(seen)


class Bookmark(BaseModel):
    """A single bookmark.  ``id`` is a display key and never an identity."""

    id: str = Field(default_factory=new_bookmark_id)
    title: str
    url: str
    notes: str | None = None
    tags: tuple[str, ...] = ()
    metadata: NodeMetadata = Field(default_factory=NodeMetadata)

    model_config = {"frozen": True}

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value):
        return normalize_tags(value)

    @field_validator("notes")
    @classmethod
    def _empty_notes(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def key(self) -> BookmarkKey:
        return BookmarkKey(url=self.url, title=self.title)

    @property
    def is_deleted(self) -> bool:
        return self.metadata.is_deleted


class Bundle(BaseModel):
    name: str
    bookmarks: tuple[Bookmark, ...] = ()
    metadata: NodeMetadata = Field(default_factory=NodeMetadata)

    model_config = {"frozen": True}

    @property
    def key(self) -> NameKey:
        return NameKey(name=self.name)

    @property
    def is_deleted(self) -> bool:
        return self.metadata.is_deleted

    @property
    def active_bookmarks(self) -> tuple[Bookmark, ...]:
        return tuple(b for b in self.bookmarks if not b.is_deleted)


class Category(BaseModel):
    name: str
    bundles: tuple[Bundle, ...] = ()
    metadata: NodeMetadata = Field(default_factory=NodeMetadata)

    model_config = {"frozen": True}

    @property
    def key(self) -> NameKey:
        return NameKey(name=self.name)

    @property
    def is_deleted(self) -> bool:
        return self.metadata.is_deleted

    @property
    def active_bundles(self) -> tuple[Bundle, ...]:
        return tuple(b for b in self.bundles if not b.is_deleted)


class Root(BaseModel):
    """The whole bookmark collection."""

    version: int = 1
    categories: tuple[Category, ...] = ()
    metadata: RootMetadata = Field(default_factory=RootMetadata)

    model_config = {"frozen": True}

    @property
    def active_categories(self) -> tuple[Category, ...]:
        return tuple(c for c in self.categories if not c.is_deleted)


# ---------------------------------------------------------------------------
# Operation inputs and outputs
# ---------------------------------------------------------------------------


class BookmarkInput(BaseModel):
    title: str
    url: str
    notes: str | None = None
    tags: tuple[str, ...] = ()

    model_config = {"frozen": True}

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value):
        return normalize_tags(value)


class BookmarkUpdate(BaseModel):
    """Partial bookmark update.

    Only fields explicitly passed to the constructor change; passing
    ``notes=None`` clears the notes.
    """

    title: str | None = None
    url: str | None = None
    notes: str | None = None
    tags: tuple[str, ...] | None = None

    model_config = {"frozen": True}

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value):
        if value is None:
            return None
        return normalize_tags(value)


class BookmarkFilter(BaseModel):
    category_name: str | None = None
    bundle_name: str | None = None
    tags: tuple[str, ...] = ()
    search_term: str | None = None

    model_config = {"frozen": True}


class BookmarkSearchResult(BaseModel):
    bookmark: Bookmark
    category_name: str
    bundle_name: str

    model_config = {"frozen": True}


class BookmarkStats(BaseModel):
    categories_count: int = 0
    bundles_count: int = 0
    bookmarks_count: int = 0
    tags_count: int = 0

    model_config = {"frozen": True}
