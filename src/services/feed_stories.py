"""
FeedStoryStore - durable "seen items" store, one row per unique item per feed.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from core.dates import from_iso, to_iso, utc_now
from core.entities import StoryRecord
from services.database import Database, MAX_BATCH_OPS

logger = logging.getLogger(__name__)

INSERT_STORY = """
    INSERT INTO feed_stories
    (id, feed_id, feed_title, feed_type, title, url, snippet, description, guid,
     thumbnail, categories, metrics, publish_date, first_seen_at, last_seen_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO NOTHING
"""

TOUCH_STORY = "UPDATE feed_stories SET last_seen_at = ? WHERE id = ?"

TOUCH_STORY_WITH_METRICS = "UPDATE feed_stories SET last_seen_at = ?, metrics = ? WHERE id = ?"


def _row_to_story(row) -> StoryRecord:
    metrics = row["metrics"]
    return StoryRecord(
        id=row["id"],
        feed_id=row["feed_id"],
        feed_title=row["feed_title"],
        feed_type=row["feed_type"],
        title=row["title"],
        url=row["url"],
        snippet=row["snippet"],
        description=row["description"],
        guid=row["guid"],
        thumbnail=row["thumbnail"],
        categories=json.loads(row["categories"] or "[]"),
        metrics=json.loads(metrics) if metrics else None,
        publish_date=from_iso(row["publish_date"]),
        first_seen_at=from_iso(row["first_seen_at"]),
        last_seen_at=from_iso(row["last_seen_at"]),
    )


def insert_operation(story: StoryRecord) -> Tuple[str, tuple]:
    return (
        INSERT_STORY,
        (
            story.id,
            story.feed_id,
            story.feed_title,
            story.feed_type,
            story.title,
            story.url,
            story.snippet,
            story.description,
            story.guid,
            story.thumbnail,
            json.dumps(list(story.categories)),
            json.dumps(story.metrics) if story.metrics else None,
            to_iso(story.publish_date),
            to_iso(story.first_seen_at),
            to_iso(story.last_seen_at),
        ),
    )


def touch_operation(story_id: str, seen_at: datetime, metrics: Optional[dict] = None) -> Tuple[str, tuple]:
    if metrics:
        return TOUCH_STORY_WITH_METRICS, (to_iso(seen_at), json.dumps(metrics), story_id)
    return TOUCH_STORY, (to_iso(seen_at), story_id)


class FeedStoryStore:
    def __init__(self, database: Database):
        self.db = database

    async def get(self, story_id: str) -> Optional[StoryRecord]:
        row = await self.db.fetchone("SELECT * FROM feed_stories WHERE id = ?", (story_id,))
        return _row_to_story(row) if row else None

    async def existing_ids(self, story_ids: List[str]) -> set:
        if not story_ids:
            return set()
        placeholders = ",".join("?" for _ in story_ids)
        rows = await self.db.fetchall(
            f"SELECT id FROM feed_stories WHERE id IN ({placeholders})",
            tuple(story_ids),
        )
        return {row["id"] for row in rows}

    async def count(self, feed_id: Optional[str] = None) -> int:
        if feed_id:
            row = await self.db.fetchone("SELECT COUNT(*) FROM feed_stories WHERE feed_id = ?", (feed_id,))
        else:
            row = await self.db.fetchone("SELECT COUNT(*) FROM feed_stories")
        return row[0]

    async def get_recent_stories(self, days: int = 30, limit: int = 1000) -> List[StoryRecord]:
        """Stories published within the last N days, newest first."""
        cutoff = utc_now() - timedelta(days=days)
        rows = await self.db.fetchall(
            """SELECT * FROM feed_stories
               WHERE publish_date >= ?
               ORDER BY publish_date DESC
               LIMIT ?""",
            (to_iso(cutoff), limit),
        )
        return [_row_to_story(row) for row in rows]

    async def delete_old_stories(self, days: int = 30) -> int:
        """Retention sweep: remove stories first seen more than N days ago."""
        cutoff = utc_now() - timedelta(days=days)
        deleted = await self.db.execute(
            """DELETE FROM feed_stories WHERE id IN (
                   SELECT id FROM feed_stories WHERE first_seen_at < ? LIMIT ?
               )""",
            (to_iso(cutoff), MAX_BATCH_OPS),
        )
        if deleted:
            logger.info(f"Deleted {deleted} old feed stories")
        return deleted
