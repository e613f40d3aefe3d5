"""
Feed health: the feeds table, health classification and the write batcher
that coalesces per-feed success/error updates into one batched write.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from core.dates import from_iso, to_iso, utc_now
from core.entities import FeedHealth
from services.activity_log import ActivityLog
from services.database import Database, MAX_BATCH_OPS

logger = logging.getLogger(__name__)

# A feed is dead after this many consecutive errors
ERROR_THRESHOLD = 5
# ... or when it has not been fetched successfully for this many days
DAYS_THRESHOLD = 30


def _row_to_health(row) -> FeedHealth:
    return FeedHealth(
        id=row["id"],
        title=row["title"],
        url=row["url"],
        type=row["type"],
        error_count=row["error_count"] or 0,
        last_error=row["last_error"],
        last_fetched=from_iso(row["last_fetched"]),
        last_successful_fetch=from_iso(row["last_successful_fetch"]),
    )


class FeedRegistry:
    def __init__(self, database: Database):
        self.db = database

    async def upsert_feed(self, feed_id: str, title: str, url: str, feed_type: str = "rss", enabled: bool = True) -> None:
        """Register a feed, keeping its health counters when it already exists."""
        await self.db.execute(
            """
            INSERT INTO feeds (id, title, url, type, enabled, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                url = excluded.url,
                type = excluded.type,
                enabled = excluded.enabled
            """,
            (feed_id, title, url, feed_type, enabled, to_iso(utc_now())),
        )

    async def get_feed(self, feed_id: str) -> Optional[FeedHealth]:
        row = await self.db.fetchone("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _row_to_health(row) if row else None

    async def classify_feeds(self, now: Optional[datetime] = None) -> Dict[str, List[FeedHealth]]:
        """
        Split feeds into healthy, problematic (some errors) and dead
        (ERROR_THRESHOLD errors, or no success in DAYS_THRESHOLD days).
        """
        now = now or utc_now()
        cutoff = now - timedelta(days=DAYS_THRESHOLD)
        rows = await self.db.fetchall("SELECT * FROM feeds ORDER BY id")

        result: Dict[str, List[FeedHealth]] = {"healthy": [], "problematic": [], "dead": []}
        for row in rows:
            feed = _row_to_health(row)
            created_at = from_iso(row["created_at"])

            if feed.error_count >= ERROR_THRESHOLD:
                feed.is_dead = True
                feed.reason = f"Failed {feed.error_count} times"
            elif feed.last_successful_fetch and feed.last_successful_fetch < cutoff:
                feed.is_dead = True
                feed.reason = f"No successful fetch in {DAYS_THRESHOLD}+ days"
            elif feed.last_successful_fetch is None and created_at and created_at < cutoff:
                feed.is_dead = True
                feed.reason = "Never fetched successfully"

            if feed.is_dead:
                result["dead"].append(feed)
            elif feed.error_count > 0:
                result["problematic"].append(feed)
            else:
                result["healthy"].append(feed)

        return result


@dataclass
class HealthUpdate:
    feed_id: str
    success: bool
    queued_at: datetime
    error: Optional[str] = None


class FeedHealthBatcher:
    """
    Coalesces health updates per feed and writes them in one batch when the
    window since the first pending update elapses or `max_batch` feeds are
    pending. Delivery is at most once: a failed batch is dropped.
    """

    def __init__(
        self,
        database: Database,
        activity_log: ActivityLog,
        window_seconds: float = 5.0,
        max_batch: int = 100,
    ):
        self.db = database
        self.activity_log = activity_log
        self.window_seconds = window_seconds
        self.max_batch = max_batch
        self._pending: Dict[str, HealthUpdate] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> Dict[str, HealthUpdate]:
        return dict(self._pending)

    def queue_success(self, feed_id: str) -> None:
        self._pending[feed_id] = HealthUpdate(feed_id=feed_id, success=True, queued_at=utc_now())
        self._after_queue()

    def queue_error(self, feed_id: str, message: str) -> None:
        existing = self._pending.get(feed_id)
        if existing is not None and not existing.success:
            # first error in the window wins
            return
        self._pending[feed_id] = HealthUpdate(feed_id=feed_id, success=False, queued_at=utc_now(), error=message)
        self._after_queue()

    def _after_queue(self) -> None:
        if len(self._pending) >= self.max_batch:
            self._start_flush()
        elif self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.window_seconds, self._start_flush)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_flush(self) -> None:
        self._cancel_timer()
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> int:
        """
        Write all pending updates in one batch.

        Returns:
            Number of feeds updated
        """
        self._cancel_timer()
        if not self._pending:
            return 0

        updates = list(self._pending.values())
        self._pending.clear()

        try:
            known = await self._known_feeds([u.feed_id for u in updates])
            now = to_iso(utc_now())
            operations = []
            for update in updates:
                if update.feed_id not in known:
                    logger.warning(f"Feed {update.feed_id} not found, skipping health update")
                    continue
                if update.success:
                    operations.append((
                        """UPDATE feeds SET error_count = 0, last_error = NULL,
                           last_successful_fetch = ?, last_fetched = ? WHERE id = ?""",
                        (now, now, update.feed_id),
                    ))
                else:
                    operations.append((
                        """UPDATE feeds SET error_count = error_count + 1, last_error = ?,
                           last_fetched = ? WHERE id = ?""",
                        (update.error, now, update.feed_id),
                    ))

            for start in range(0, len(operations), MAX_BATCH_OPS):
                await self.db.execute_batch(operations[start:start + MAX_BATCH_OPS])
        except Exception as e:
            logger.exception(f"Failed to flush {len(updates)} feed health updates: {e}")
            self.activity_log.error(f"Failed to record feed health for {len(updates)} feeds: {e}")
            return 0

        logger.debug(f"Flushed {len(operations)} feed health updates")
        return len(operations)

    async def _known_feeds(self, feed_ids: List[str]) -> Set[str]:
        placeholders = ",".join("?" for _ in feed_ids)
        rows = await self.db.fetchall(f"SELECT id FROM feeds WHERE id IN ({placeholders})", tuple(feed_ids))
        return {row["id"] for row in rows}

    async def close(self) -> None:
        """Flush what is pending and wait for flushes already started."""
        self._cancel_timer()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.flush()
