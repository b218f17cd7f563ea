"""Command line interface.

Every command binds to the gist first (``SyncEngine.initialize``), so the
local tree always starts from the current remote state.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Awaitable, Callable

from . import __version__
from .converters.markdown import encode
from .errors import NotFound, ValidationError, format_error
from .lifespan import engine_lifespan
from .result import Result
from .sync.engine import SyncEngine
from .sync.models import MergeConflict, SyncOutcome
from .sync.reporter import format_conflicts, format_sync_outcome, outcome_to_json
from .sync.resolver import resolutions_for
from .tree.metadata import format_timestamp
from .tree.models import BookmarkFilter, BookmarkInput

logger = logging.getLogger(__name__)

Command = Callable[[SyncEngine, argparse.Namespace], Awaitable[int]]


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _fail(error: BaseException) -> int:
    print(format_error(error), file=sys.stderr)
    return 1


def _report(result: Result[SyncOutcome], as_json: bool = False) -> int:
    if not result.success:
        return _fail(result.error)
    if as_json:
        print(json.dumps(outcome_to_json(result.data), indent=2))
    else:
        print(format_sync_outcome(result.data))
    return 2 if result.data.has_conflicts else 0


def _print_conflicts(conflicts: list[MergeConflict]) -> None:
    print(format_conflicts(conflicts))
    print("\nRun 'gistmarks resolve --prefer local|remote' to continue.")


async def _bind(engine: SyncEngine, args: argparse.Namespace) -> Result[SyncOutcome]:
    return await engine.initialize(gist_id=args.gist_id)


def _bookmark_id(engine: SyncEngine, category: str, bundle: str, url: str) -> str:
    matches = engine.search(BookmarkFilter(category_name=category, bundle_name=bundle))
    for match in matches:
        if match.bookmark.url == url:
            return match.bookmark.id
    raise NotFound(f"No bookmark with URL {url} in {category}/{bundle}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_init(engine: SyncEngine, args: argparse.Namespace) -> int:
    result = await _bind(engine, args)
    if result.success:
        print(f"Bound to gist {result.data.gist_id}")
    return _report(result, args.json)


async def cmd_sync(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    result = await engine.sync_with_remote(on_conflict=_print_conflicts)
    return _report(result, args.json)


async def cmd_status(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    stats = engine.stats()
    last_synced = engine.state.get_last_synced(engine.gist_id)
    status = {
        "gist_id": engine.gist_id,
        "last_synced": format_timestamp(last_synced),
        "categories": stats.categories_count,
        "bundles": stats.bundles_count,
        "bookmarks": stats.bookmarks_count,
        "tags": stats.tags_count,
        "pending_conflicts": len(engine.pending_conflicts),
    }
    if args.json:
        print(json.dumps(status, indent=2))
    else:
        for key, value in status.items():
            print(f"{key}: {value}")
    return 0


async def cmd_show(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    print(encode(engine.root))
    return 0


async def cmd_add_category(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    return _report(await engine.add_category(args.name), args.json)


async def cmd_add_bundle(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    return _report(await engine.add_bundle(args.category, args.name), args.json)


async def cmd_add_bookmark(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    tags = [t for t in (args.tags or "").split(",") if t.strip()]
    data = BookmarkInput(
        title=args.title or args.url,
        url=args.url,
        tags=tags,
        notes=args.notes,
    )
    return _report(
        await engine.add_bookmark(args.category, args.bundle, data), args.json
    )


async def cmd_remove_bookmark(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    try:
        bookmark_id = _bookmark_id(engine, args.category, args.bundle, args.url)
    except NotFound as e:
        return _fail(e)
    return _report(
        await engine.remove_bookmark(args.category, args.bundle, bookmark_id),
        args.json,
    )


async def cmd_search(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    criteria = BookmarkFilter(
        search_term=args.term,
        category_name=args.category,
        tags=tuple(args.tag or ()),
    )
    results = engine.search(criteria)
    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in results], indent=2))
        return 0
    for r in results:
        tags = f"  [{', '.join(r.bookmark.tags)}]" if r.bookmark.tags else ""
        print(
            f"{r.category_name} / {r.bundle_name}: "
            f"{r.bookmark.title} <{r.bookmark.url}>{tags}"
        )
    print(f"{len(results)} bookmark(s) found")
    return 0


async def cmd_stats(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    stats = engine.stats()
    if args.json:
        print(json.dumps(stats.model_dump(), indent=2))
    else:
        print(
            f"{stats.categories_count} categories, {stats.bundles_count} bundles, "
            f"{stats.bookmarks_count} bookmarks, {stats.tags_count} tags"
        )
    return 0


async def cmd_resolve(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)
    if not bound.data.has_conflicts:
        print("No conflicts to resolve.")
        return 0
    resolutions = resolutions_for(bound.data.conflicts, args.prefer)
    logger.info("Resolving %d conflict(s) as %s", len(resolutions), args.prefer)
    return _report(
        await engine.sync_with_conflict_resolution(resolutions), args.json
    )


async def cmd_watch(engine: SyncEngine, args: argparse.Namespace) -> int:
    bound = await _bind(engine, args)
    if not bound.success:
        return _fail(bound.error)

    async def on_change() -> None:
        result = await engine.sync_with_remote(on_conflict=_print_conflicts)
        _report(result)

    detector = engine.start_watching(on_change)
    print(
        f"Watching gist {engine.gist_id} every {detector.interval}s. "
        "Press Ctrl+C to stop.",
        file=sys.stderr,
    )
    try:
        while detector.is_running():
            await asyncio.sleep(1)
    finally:
        engine.stop_watching()
    return 0


COMMANDS: dict[str, Command] = {
    "init": cmd_init,
    "sync": cmd_sync,
    "status": cmd_status,
    "show": cmd_show,
    "add-category": cmd_add_category,
    "add-bundle": cmd_add_bundle,
    "add-bookmark": cmd_add_bookmark,
    "remove-bookmark": cmd_remove_bookmark,
    "search": cmd_search,
    "stats": cmd_stats,
    "resolve": cmd_resolve,
    "watch": cmd_watch,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gistmarks",
        description="Bookmark collection stored as Markdown in a GitHub Gist",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Bind to (or create) the bookmark gist
  gistmarks init

  # Add a bookmark
  gistmarks add-bookmark Work Q1 https://docs.example --title Docs --tags ref,api

  # Keep syncing while another device edits the gist
  gistmarks watch
        """,
    )
    parser.add_argument("--token", help="GitHub token (overrides GITHUB_TOKEN)")
    parser.add_argument("--gist-id", help="Gist to bind to")
    parser.add_argument("--filename", help="Bookmark file inside the gist")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use an in-memory gist store instead of GitHub",
    )
    parser.add_argument("--json", action="store_true", help="Print JSON output")
    parser.add_argument(
        "--version",
        action="version",
        version=f"gistmarks version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init", help="Bind to a gist, creating one if needed")
    sub.add_parser("sync", help="Merge local and remote changes")
    sub.add_parser("status", help="Show binding and sync status")
    sub.add_parser("show", help="Print the collection as Markdown")
    sub.add_parser("stats", help="Count categories, bundles and bookmarks")
    sub.add_parser("watch", help="Poll the gist and sync on change")

    p = sub.add_parser("add-category", help="Add a category")
    p.add_argument("name")

    p = sub.add_parser("add-bundle", help="Add a bundle to a category")
    p.add_argument("category")
    p.add_argument("name")

    p = sub.add_parser("add-bookmark", help="Add a bookmark to a bundle")
    p.add_argument("category")
    p.add_argument("bundle")
    p.add_argument("url")
    p.add_argument("--title", help="Title (defaults to the URL)")
    p.add_argument("--tags", help="Comma-separated tags")
    p.add_argument("--notes", help="Free-text notes")

    p = sub.add_parser("remove-bookmark", help="Remove a bookmark by URL")
    p.add_argument("category")
    p.add_argument("bundle")
    p.add_argument("url")

    p = sub.add_parser("search", help="Search bookmarks")
    p.add_argument("term", nargs="?", help="Matches title, URL and notes")
    p.add_argument("--category", help="Limit to one category")
    p.add_argument("--tag", action="append", help="Require a tag (repeatable)")

    p = sub.add_parser("resolve", help="Resolve every pending conflict one way")
    p.add_argument("--prefer", choices=("local", "remote"), required=True)

    return parser


async def main(args: argparse.Namespace, config_overrides: dict | None = None) -> int:
    async with engine_lifespan(config_overrides) as engine:
        try:
            return await COMMANDS[args.command](engine, args)
        except ValidationError as e:
            return _fail(e)


def run() -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    parser = build_parser()
    args = parser.parse_args()

    config_overrides: dict = {}
    if args.token:
        config_overrides["token"] = args.token
    if args.gist_id:
        config_overrides["gist_id"] = args.gist_id
    if args.filename:
        config_overrides["filename"] = args.filename
    if args.debug:
        config_overrides["debug"] = True
    if args.log_file:
        config_overrides["log_file"] = args.log_file
    if args.mock:
        config_overrides["use_mock"] = True

    try:
        sys.exit(asyncio.run(main(args, config_overrides)))
    except RuntimeError:
        # Already reported by the lifespan manager
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
