"""
FeedItemIngestor - idempotent upsert of adapter items into the feed story store.
New items are handed to the matching engine; items already seen only get
their last-seen timestamp (and metrics) refreshed.
"""
import asyncio
import hashlib
import logging
from datetime import datetime
from typing import List, Optional, Set, Tuple

from core.dates import utc_now, validated_publish_date
from core.entities import Bundle, IngestResult, StoryRecord
from core.matching import MatchCandidate
from ingestion.base import FeedItem
from processing.matcher import BundleMatchingEngine
from services.activity_log import ActivityLog
from services.bundles import BundleRepository
from services.database import Database
from services.feed_stories import FeedStoryStore, insert_operation, touch_operation

logger = logging.getLogger(__name__)


def story_id(feed_id: str, identity_key: str) -> str:
    """Canonical identity of an item: hash of its feed and url-or-guid."""
    return hashlib.sha256(f"{feed_id}\n{identity_key}".encode("utf-8")).hexdigest()


def build_story_record(
    feed_id: str,
    feed_title: str,
    feed_type: str,
    item: FeedItem,
    now: datetime,
) -> StoryRecord:
    return StoryRecord(
        id=story_id(feed_id, item.identity_key()),
        feed_id=feed_id,
        feed_title=feed_title,
        feed_type=feed_type,
        title=item.title or (item.content or "")[:100] or "Untitled",
        url=item.story_url,
        snippet=item.content_snippet or item.content,
        description=item.description or item.content_snippet or item.content,
        guid=item.guid or item.story_url or None,
        thumbnail=item.thumbnail,
        categories=list(item.categories),
        metrics=item.metrics,
        publish_date=validated_publish_date(item.pub_date, now=now, title=item.title),
        first_seen_at=now,
        last_seen_at=now,
    )


def candidate_from_item(story: StoryRecord, item: FeedItem) -> MatchCandidate:
    return MatchCandidate(
        item_id=story.id,
        feed_id=story.feed_id,
        feed_title=story.feed_title,
        feed_type=story.feed_type,
        title=story.title,
        url=story.url,
        snippet=story.snippet,
        description=story.description,
        content=item.content,
        author=item.author,
        categories=tuple(story.categories),
        publish_date=story.publish_date,
        thumbnail=story.thumbnail,
    )


class FeedItemIngestor:
    def __init__(
        self,
        database: Database,
        stories: FeedStoryStore,
        bundles: BundleRepository,
        matcher: BundleMatchingEngine,
        activity_log: ActivityLog,
        batch_size: int = 5,
        batch_delay: float = 0.5,
    ):
        self.db = database
        self.stories = stories
        self.bundles = bundles
        self.matcher = matcher
        self.activity_log = activity_log
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay

    async def ingest(
        self,
        feed_id: str,
        feed_title: str,
        feed_type: str,
        items: List[FeedItem],
    ) -> IngestResult:
        saved = 0
        skipped = 0
        failed = 0
        seen: Set[str] = set()
        bundles: Optional[List[Bundle]] = None

        for start in range(0, len(items), self.batch_size):
            chunk = items[start:start + self.batch_size]
            try:
                chunk_saved, chunk_skipped, new_items = await self._ingest_chunk(
                    feed_id, feed_title, feed_type, chunk, seen
                )
            except Exception as e:
                failed += len(chunk)
                logger.exception(f"Failed to save stories {start}-{start + len(chunk)} for {feed_title}: {e}")
                self.activity_log.error(
                    f"Failed to save {len(chunk)} stories for {feed_title}: {e}", feed_id=feed_id
                )
            else:
                saved += chunk_saved
                skipped += chunk_skipped
                if new_items:
                    if bundles is None:
                        bundles = await self._load_bundles()
                    for story, item in new_items:
                        await self.matcher.process_new_item(candidate_from_item(story, item), bundles)

            if start + self.batch_size < len(items) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        self.activity_log.info(
            f"Feed stories saved: {saved} new, {skipped} existing for {feed_title}",
            feed_id=feed_id,
            feed_title=feed_title,
        )
        return IngestResult(saved=saved, skipped=skipped, failed=failed)

    async def _ingest_chunk(
        self,
        feed_id: str,
        feed_title: str,
        feed_type: str,
        chunk: List[FeedItem],
        seen: Set[str],
    ) -> Tuple[int, int, List[Tuple[StoryRecord, FeedItem]]]:
        now = utc_now()
        records = [build_story_record(feed_id, feed_title, feed_type, item, now) for item in chunk]
        existing = await self.stories.existing_ids([record.id for record in records])

        operations = []
        # (operation index, record, item) for every attempted insert
        inserts: List[Tuple[int, StoryRecord, FeedItem]] = []
        chunk_ids: Set[str] = set()
        skipped = 0

        for record, item in zip(records, chunk):
            if record.id in existing:
                operations.append(touch_operation(record.id, now, item.metrics))
                skipped += 1
            elif record.id in seen or record.id in chunk_ids:
                skipped += 1
            else:
                # A concurrent ingest may insert the same row first; the insert
                # is then a no-op and the touch refreshes last-seen instead.
                inserts.append((len(operations), record, item))
                operations.append(insert_operation(record))
                operations.append(touch_operation(record.id, now, item.metrics))
                chunk_ids.add(record.id)

        rowcounts = await self.db.execute_batch(operations) if operations else []
        new_items = [(record, item) for index, record, item in inserts if rowcounts[index] == 1]
        skipped += len(inserts) - len(new_items)
        seen.update(chunk_ids)
        return len(new_items), skipped, new_items

    async def _load_bundles(self) -> List[Bundle]:
        try:
            return await self.bundles.list_bundles()
        except Exception as e:
            logger.error(f"Could not load bundles for matching: {e}")
            self.activity_log.error(f"Could not load bundles for matching: {e}")
            return []
