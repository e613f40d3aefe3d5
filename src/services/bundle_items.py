"""
BundleMatchIndex - durable (bundle, item) matches with score and matched terms.
"""
import json
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from core.dates import from_iso, to_iso, utc_now
from core.entities import BundleMatch
from services.database import Database, MAX_BATCH_OPS

logger = logging.getLogger(__name__)

UPSERT_MATCH = """
    INSERT OR REPLACE INTO bundle_items
    (bundle_id, feed_id, item_id, title, url, publish_date, snippet, thumbnail,
     feed_title, feed_type, relevance_score, matched_terms, inserted_at)
    SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
    WHERE NOT EXISTS (
        SELECT 1 FROM removed_stories WHERE bundle_id = ? AND story_url = ?
    )
"""


def _row_to_match(row) -> BundleMatch:
    return BundleMatch(
        bundle_id=row["bundle_id"],
        feed_id=row["feed_id"],
        item_id=row["item_id"],
        matched_terms=json.loads(row["matched_terms"] or "[]"),
        relevance_score=row["relevance_score"],
        title=row["title"],
        url=row["url"],
        publish_date=from_iso(row["publish_date"]),
        feed_title=row["feed_title"],
        feed_type=row["feed_type"],
        snippet=row["snippet"],
        thumbnail=row["thumbnail"],
        inserted_at=from_iso(row["inserted_at"]),
    )


def _upsert_operation(match: BundleMatch) -> Tuple[str, tuple]:
    """Upsert that is a no-op while the (bundle, url) pair is tombstoned."""
    params = (
        match.bundle_id,
        match.feed_id,
        match.item_id,
        match.title,
        match.url,
        to_iso(match.publish_date),
        match.snippet,
        match.thumbnail,
        match.feed_title,
        match.feed_type,
        match.relevance_score,
        json.dumps(list(match.matched_terms)),
        to_iso(match.inserted_at or utc_now()),
    )
    return UPSERT_MATCH, params + (match.bundle_id, match.url)


class BundleMatchIndex:
    def __init__(self, database: Database):
        self.db = database

    async def save_matches(self, matches: List[BundleMatch]) -> int:
        """
        Write matches with deterministic keys; concurrent writers converge.
        Pairs tombstoned by the time the write commits are not written.
        """
        matches = [m for m in matches if m.relevance_score > 0]
        written = 0
        for start in range(0, len(matches), MAX_BATCH_OPS):
            batch = matches[start:start + MAX_BATCH_OPS]
            rowcounts = await self.db.execute_batch(_upsert_operation(m) for m in batch)
            written += sum(rowcounts)
        return written

    async def get_bundle_items(self, bundle_id: str, limit: Optional[int] = None) -> List[BundleMatch]:
        query = """SELECT * FROM bundle_items
                   WHERE bundle_id = ?
                   ORDER BY relevance_score DESC, publish_date DESC, item_id ASC"""
        params: tuple = (bundle_id,)
        if limit:
            query += " LIMIT ?"
            params = (bundle_id, limit)
        rows = await self.db.fetchall(query, params)
        return [_row_to_match(row) for row in rows]

    async def count(self, bundle_id: str) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) FROM bundle_items WHERE bundle_id = ?", (bundle_id,))
        return row[0]

    async def replace_bundle_items(self, bundle_id: str, matches: List[BundleMatch]) -> int:
        """
        Drop every match of a bundle and write the given ones instead. The
        delete commits together with the first batch of writes, so readers
        never see the bundle emptied.
        """
        matches = [m for m in matches if m.relevance_score > 0]
        first, rest = matches[:MAX_BATCH_OPS - 1], matches[MAX_BATCH_OPS - 1:]

        operations = [("DELETE FROM bundle_items WHERE bundle_id = ?", (bundle_id,))]
        operations.extend(_upsert_operation(m) for m in first)
        rowcounts = await self.db.execute_batch(operations)

        written = sum(rowcounts[1:]) + await self.save_matches(rest)
        logger.info(f"Replaced {rowcounts[0]} items for bundle {bundle_id} with {written}")
        return written

    async def cleanup_old_bundle_items(self, days: int = 30) -> int:
        cutoff = utc_now() - timedelta(days=days)
        removed = await self.db.execute(
            "DELETE FROM bundle_items WHERE publish_date < ?",
            (to_iso(cutoff),),
        )
        if removed:
            logger.info(f"Cleaned up {removed} old bundle items")
        return removed
