import argparse
import asyncio
import json
import logging
import time
from typing import List, Optional

from services.config import load_config
from services.context import AppContext
from services.logging import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bundle-feeds", description="Feed indexing and bundle story cache")
    parser.add_argument("--config", help="Path to config.yml (default: resources/config.yml)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create tables, register feeds and seed bundles")
    sub.add_parser("refresh", help="Fetch and ingest every enabled feed")

    stories = sub.add_parser("stories", help="Print the cached stories of a bundle")
    stories.add_argument("bundle")
    stories.add_argument("--force", action="store_true", help="Rebuild the cache before reading")
    stories.add_argument("--limit", type=int, default=20)

    clear = sub.add_parser("clear-cache", help="Invalidate every cache tier for a bundle")
    clear.add_argument("bundle")

    remove = sub.add_parser("remove-story", help="Remove a story from a bundle")
    remove.add_argument("bundle")
    remove.add_argument("url")
    remove.add_argument("--actor", required=True)

    restore = sub.add_parser("restore-story", help="Undo the removal of a story from a bundle")
    restore.add_argument("bundle")
    restore.add_argument("url", nargs="?", help="Omit to restore every removed story of the bundle")

    removed = sub.add_parser("removed", help="List the stories removed from a bundle")
    removed.add_argument("bundle")

    sub.add_parser("cleanup", help="Delete stories and matches past the retention window")
    health = sub.add_parser("health", help="Classify feeds as healthy, problematic or dead")
    health.add_argument("--feed", help="Show a single feed instead")
    return parser


async def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    start_time = time.perf_counter()
    setup_logging(logging.DEBUG if args.debug else logging.INFO)
    logger = logging.getLogger(__name__)

    config = load_config(args.config)
    ctx = AppContext.build(config)

    try:
        if args.command == "init":
            await ctx.init()

        elif args.command == "refresh":
            feeds = config.enabled_feeds()
            logger.info(f"Refreshing {len(feeds)} feeds")
            summary = await ctx.refresher.refresh_feeds(feeds)
            for failed in summary.failed_feeds:
                logger.warning(f"Feed failed: {failed['title']}: {failed['error']}")

        elif args.command == "stories":
            stories = await ctx.cache.get_stories(args.bundle, force_refresh=args.force)
            for story in stories[:args.limit]:
                print(json.dumps({
                    "score": story.relevance_score,
                    "title": story.title,
                    "url": story.url,
                    "source": story.source_name,
                    "published_at": story.published_at.isoformat() if story.published_at else None,
                }))

        elif args.command == "clear-cache":
            await ctx.cache.clear_cache(args.bundle)

        elif args.command == "remove-story":
            await ctx.remove_story(args.bundle, args.url, args.actor)

        elif args.command == "restore-story":
            await ctx.restore_story(args.bundle, args.url)

        elif args.command == "removed":
            for tombstone in await ctx.tombstones.get_tombstones(args.bundle):
                print(json.dumps({
                    "url": tombstone.story_url,
                    "actor": tombstone.actor_id,
                    "removed_at": tombstone.removed_at.isoformat() if tombstone.removed_at else None,
                }))

        elif args.command == "cleanup":
            deleted = await ctx.cleanup()
            logger.info(f"Retention sweep removed {deleted['stories']} stories and {deleted['bundle_items']} matches")

        elif args.command == "health" and args.feed:
            feed = await ctx.feeds.get_feed(args.feed)
            if feed is None:
                logger.error(f"Unknown feed: {args.feed}")
            else:
                print(json.dumps({
                    "id": feed.id,
                    "title": feed.title,
                    "error_count": feed.error_count,
                    "last_error": feed.last_error,
                    "last_successful_fetch": feed.last_successful_fetch.isoformat() if feed.last_successful_fetch else None,
                }))

        elif args.command == "health":
            status = await ctx.feeds.classify_feeds()
            for state, feeds in status.items():
                for feed in feeds:
                    print(json.dumps({
                        "status": state,
                        "id": feed.id,
                        "title": feed.title,
                        "error_count": feed.error_count,
                        "reason": feed.reason,
                    }))
    finally:
        await ctx.close()

    end_time = time.perf_counter()
    logger.info(f"Total time: {end_time - start_time}")


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
