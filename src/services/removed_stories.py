"""
TombstoneStore - (story url, bundle) pairs a user removed from a bundle.
A tombstone keeps the url out of both matching and cached reads until it is
explicitly cleared.
"""
import logging
from typing import List

from core.dates import from_iso, to_iso, utc_now
from core.entities import Tombstone
from services.database import Database

logger = logging.getLogger(__name__)


class TombstoneStore:
    def __init__(self, database: Database):
        self.db = database

    async def mark_removed(self, url: str, bundle_id: str, actor: str) -> None:
        """
        Record the removal and drop any existing match for the pair, in one
        transaction.
        """
        await self.db.execute_batch([
            (
                """INSERT OR REPLACE INTO removed_stories
                   (bundle_id, story_url, actor_id, removed_at)
                   VALUES (?, ?, ?, ?)""",
                (bundle_id, url, actor, to_iso(utc_now())),
            ),
            (
                "DELETE FROM bundle_items WHERE bundle_id = ? AND url = ?",
                (bundle_id, url),
            ),
        ])
        logger.info(f"Story removed from bundle {bundle_id} by {actor}: {url}")

    async def is_removed(self, url: str, bundle_id: str) -> bool:
        row = await self.db.fetchone(
            "SELECT 1 FROM removed_stories WHERE bundle_id = ? AND story_url = ?",
            (bundle_id, url),
        )
        return row is not None

    async def list_removed(self, bundle_id: str) -> List[str]:
        rows = await self.db.fetchall(
            "SELECT story_url FROM removed_stories WHERE bundle_id = ? ORDER BY removed_at",
            (bundle_id,),
        )
        return [row["story_url"] for row in rows]

    async def get_tombstones(self, bundle_id: str) -> List[Tombstone]:
        rows = await self.db.fetchall(
            "SELECT * FROM removed_stories WHERE bundle_id = ? ORDER BY removed_at",
            (bundle_id,),
        )
        return [
            Tombstone(
                story_url=row["story_url"],
                bundle_id=row["bundle_id"],
                actor_id=row["actor_id"],
                removed_at=from_iso(row["removed_at"]),
            )
            for row in rows
        ]

    async def restore(self, url: str, bundle_id: str) -> bool:
        deleted = await self.db.execute(
            "DELETE FROM removed_stories WHERE bundle_id = ? AND story_url = ?",
            (bundle_id, url),
        )
        return deleted > 0

    async def clear_for_bundle(self, bundle_id: str) -> int:
        return await self.db.execute("DELETE FROM removed_stories WHERE bundle_id = ?", (bundle_id,))
