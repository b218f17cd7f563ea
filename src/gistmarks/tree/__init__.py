"""Bookmark tree: immutable models, metadata helpers and the operation API."""

from .metadata import (
    compare_bookmarks_content,
    compare_bundles_content,
    compare_categories_content,
    compare_roots_content,
    format_timestamp,
    is_newer_than,
    latest_modified,
    mark_deleted,
    parse_timestamp,
    stamp_last_synced,
)
from .models import (
    EPOCH,
    Bookmark,
    BookmarkFilter,
    BookmarkInput,
    BookmarkKey,
    BookmarkSearchResult,
    BookmarkStats,
    BookmarkUpdate,
    Bundle,
    Category,
    NameKey,
    NodeMetadata,
    Root,
    RootMetadata,
    now_utc,
)
from .operations import (
    add_bookmark,
    add_bookmarks_batch,
    add_bundle,
    add_category,
    create_root,
    find_bookmark,
    get_stats,
    move_bookmark,
    move_bundle,
    remove_bookmark,
    remove_bundle,
    remove_category,
    rename_bundle,
    rename_category,
    search_bookmarks,
    update_bookmark,
)

__all__ = [
    "EPOCH",
    "Bookmark",
    "BookmarkFilter",
    "BookmarkInput",
    "BookmarkKey",
    "BookmarkSearchResult",
    "BookmarkStats",
    "BookmarkUpdate",
    "Bundle",
    "Category",
    "NameKey",
    "NodeMetadata",
    "Root",
    "RootMetadata",
    "add_bookmark",
    "add_bookmarks_batch",
    "add_bundle",
    "add_category",
    "compare_bookmarks_content",
    "compare_bundles_content",
    "compare_categories_content",
    "compare_roots_content",
    "create_root",
    "find_bookmark",
    "format_timestamp",
    "get_stats",
    "is_newer_than",
    "latest_modified",
    "mark_deleted",
    "move_bookmark",
    "move_bundle",
    "now_utc",
    "parse_timestamp",
    "remove_bookmark",
    "remove_bundle",
    "remove_category",
    "rename_bundle",
    "rename_category",
    "search_bookmarks",
    "stamp_last_synced",
    "update_bookmark",
]
