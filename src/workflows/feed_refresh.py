"""
Feed refresh workflow: fetch every feed through its adapter, ingest the items
and record the outcome with the health batcher.
"""
import asyncio
import logging
from typing import Callable, List

from core.entities import RefreshSummary
from ingestion.base import SourceAdapter
from ingestion.ingestor import FeedItemIngestor
from ingestion.source_factory import create_source_adapter
from services.activity_log import ActivityLog
from services.config import FeedConfig
from services.feed_health import FeedHealthBatcher

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[FeedConfig], SourceAdapter]


class FeedRefresher:
    """
    Refreshes feeds a few at a time with a pause between groups.
    One feed failing never stops the others.
    """

    def __init__(
        self,
        ingestor: FeedItemIngestor,
        health: FeedHealthBatcher,
        activity_log: ActivityLog,
        adapter_factory: AdapterFactory = create_source_adapter,
        concurrency: int = 2,
        group_delay: float = 3.0,
    ):
        self.ingestor = ingestor
        self.health = health
        self.activity_log = activity_log
        self.adapter_factory = adapter_factory
        self.concurrency = max(1, concurrency)
        self.group_delay = group_delay

    async def refresh_feeds(self, feeds: List[FeedConfig]) -> RefreshSummary:
        summary = RefreshSummary()
        total = len(feeds)

        for start in range(0, total, self.concurrency):
            group = feeds[start:start + self.concurrency]
            results = await asyncio.gather(*(self._refresh_feed(feed) for feed in group))

            for feed, error in zip(group, results):
                if error is None:
                    summary.success_count += 1
                else:
                    summary.failed_count += 1
                    summary.failed_feeds.append({"id": feed.id, "title": feed.title, "error": error})

            done = min(start + self.concurrency, total)
            self.activity_log.progress(f"Refreshed {done} of {total} feeds", done, total)

            if done < total and self.group_delay > 0:
                await asyncio.sleep(self.group_delay)

        logger.info(
            f"Feed refresh complete: {summary.success_count} succeeded, {summary.failed_count} failed"
        )
        return summary

    async def _refresh_feed(self, feed: FeedConfig):
        """Returns None on success, the error message otherwise."""
        self.activity_log.start_feed_refresh(feed.title, feed.id)
        try:
            adapter = self.adapter_factory(feed)
            items = await adapter.fetch_items()
            result = await self.ingestor.ingest(feed.id, feed.title, feed.type, items)
        except Exception as e:
            logger.error(f"Failed to refresh feed {feed.id} ({feed.title}): {e}")
            self.activity_log.error_feed_refresh(feed.title, feed.id, str(e))
            self.health.queue_error(feed.id, str(e))
            return str(e)

        self.activity_log.complete_feed_refresh(feed.title, feed.id, len(items))
        if result.failed:
            logger.warning(f"{result.failed} items of {feed.title} could not be saved")
        self.health.queue_success(feed.id)
        return None
