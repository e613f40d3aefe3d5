"""
AppContext - builds and holds the services of one process.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, Optional

from cache.local_store import LocalStore
from cache.story_cache import MultiTierStoryCache
from cache.tiers import LocalStoreTier, MemoryTier, RemoteTier
from core.dates import utc_now
from core.entities import Bundle
from ingestion.ingestor import FeedItemIngestor
from ingestion.source_factory import create_source_adapter
from processing.matcher import BundleMatchingEngine
from services.activity_log import ActivityLog
from services.bundle_items import BundleMatchIndex
from services.bundles import BundleRepository
from services.config import Config
from services.database import Database
from services.feed_health import FeedHealthBatcher, FeedRegistry
from services.feed_stories import FeedStoryStore
from services.removed_stories import TombstoneStore
from workflows.feed_refresh import FeedRefresher

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: Config
    db: Database
    activity_log: ActivityLog
    stories: FeedStoryStore
    bundles: BundleRepository
    match_index: BundleMatchIndex
    tombstones: TombstoneStore
    matcher: BundleMatchingEngine
    ingestor: FeedItemIngestor
    cache: MultiTierStoryCache
    feeds: FeedRegistry
    health: FeedHealthBatcher
    refresher: FeedRefresher

    @classmethod
    def build(cls, config: Config, clock: Callable[[], datetime] = utc_now) -> "AppContext":
        db = Database(config.DATABASE_PATH)
        activity_log = ActivityLog()
        stories = FeedStoryStore(db)
        bundles = BundleRepository(db)
        match_index = BundleMatchIndex(db)
        tombstones = TombstoneStore(db)

        matcher = BundleMatchingEngine(
            match_index,
            tombstones,
            activity_log,
            low_signal_feed_type=config.LOW_SIGNAL_FEED_TYPE,
        )
        ingestor = FeedItemIngestor(
            db,
            stories,
            bundles,
            matcher,
            activity_log,
            batch_size=config.INGEST_BATCH_SIZE,
            batch_delay=config.INGEST_BATCH_DELAY,
        )
        cache = MultiTierStoryCache(
            tiers=[
                MemoryTier(),
                LocalStoreTier(LocalStore(config.LOCAL_CACHE_PATH, config.LOCAL_CACHE_CAPACITY_BYTES), activity_log),
                RemoteTier(db, clock=clock),
            ],
            bundles=bundles,
            match_index=match_index,
            stories=stories,
            tombstones=tombstones,
            activity_log=activity_log,
            max_age_hours=config.CACHE_MAX_AGE_HOURS,
            search_window_days=config.SEARCH_WINDOW_DAYS,
            search_limit=config.SEARCH_LIMIT,
            low_signal_feed_type=config.LOW_SIGNAL_FEED_TYPE,
            clock=clock,
        )
        health = FeedHealthBatcher(
            db,
            activity_log,
            window_seconds=config.HEALTH_WINDOW_SECONDS,
            max_batch=config.HEALTH_MAX_BATCH,
        )
        refresher = FeedRefresher(
            ingestor,
            health,
            activity_log,
            adapter_factory=partial(create_source_adapter, timeout=config.FETCH_TIMEOUT),
            concurrency=config.REFRESH_CONCURRENCY,
            group_delay=config.REFRESH_GROUP_DELAY,
        )

        return cls(
            config=config,
            db=db,
            activity_log=activity_log,
            stories=stories,
            bundles=bundles,
            match_index=match_index,
            tombstones=tombstones,
            matcher=matcher,
            ingestor=ingestor,
            cache=cache,
            feeds=FeedRegistry(db),
            health=health,
            refresher=refresher,
        )

    async def init(self) -> None:
        """Create tables, register configured feeds and seed bundles."""
        await self.db.init_tables()
        for feed in self.config.feeds:
            await self.feeds.upsert_feed(feed.id, feed.title, feed.url, feed.type, feed.enabled)
        for bundle_config in self.config.bundles:
            await self.save_bundle(bundle_config.to_bundle())
        logger.info(f"Initialized {len(self.config.feeds)} feeds and {len(self.config.bundles)} bundles")

    async def save_bundle(self, bundle: Bundle) -> bool:
        """
        Save a bundle. When its criteria changed, its matches are rebuilt
        from recent stories and its cache is invalidated.
        """
        changed = await self.bundles.save_bundle(bundle)
        if changed:
            recent = await self.stories.get_recent_stories(
                days=self.config.SEARCH_WINDOW_DAYS, limit=self.config.SEARCH_LIMIT
            )
            await self.matcher.rematch_bundle(bundle, recent)
            await self.cache.clear_cache(bundle.id)
        return changed

    async def remove_story(self, bundle_id: str, url: str, actor: str) -> None:
        await self.tombstones.mark_removed(url, bundle_id, actor)
        self.activity_log.remove_story_from_bundle(url, bundle_id)

    async def restore_story(self, bundle_id: str, url: Optional[str] = None) -> int:
        """Lift one tombstone, or every tombstone of the bundle when url is None."""
        if url:
            restored = 1 if await self.tombstones.restore(url, bundle_id) else 0
        else:
            restored = await self.tombstones.clear_for_bundle(bundle_id)
        if restored:
            await self.cache.clear_cache(bundle_id)
        logger.info(f"Restored {restored} stories to bundle {bundle_id}")
        return restored

    async def cleanup(self) -> dict:
        """Retention sweep over stories and bundle matches."""
        days = self.config.RETENTION_DAYS
        return {
            "stories": await self.stories.delete_old_stories(days),
            "bundle_items": await self.match_index.cleanup_old_bundle_items(days),
        }

    async def close(self) -> None:
        await self.health.close()
