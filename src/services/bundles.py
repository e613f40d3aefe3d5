"""
BundleRepository - read access to bundles for the matcher and the cache.
Bundles are owned by the surrounding product; `save_bundle` exists to seed them.
"""
import json
import logging
from typing import List, Optional

from core.dates import to_iso, utc_now
from core.entities import Bundle
from services.database import Database

logger = logging.getLogger(__name__)


def _row_to_bundle(row) -> Bundle:
    return Bundle(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        search_terms=json.loads(row["search_terms"] or "[]"),
        feed_ids=json.loads(row["feed_ids"] or "[]"),
        priority=row["priority"],
    )


class BundleRepository:
    def __init__(self, database: Database):
        self.db = database

    async def list_bundles(self) -> List[Bundle]:
        rows = await self.db.fetchall("SELECT * FROM bundles ORDER BY id")
        return [_row_to_bundle(row) for row in rows]

    async def get_bundle(self, bundle_id: str) -> Optional[Bundle]:
        row = await self.db.fetchone("SELECT * FROM bundles WHERE id = ?", (bundle_id,))
        return _row_to_bundle(row) if row else None

    async def save_bundle(self, bundle: Bundle) -> bool:
        """
        Insert or replace a bundle.

        Returns:
            True when the matching criteria (title, search terms, feed subset)
            changed, meaning matches and caches for the bundle are out of date.
        """
        existing = await self.get_bundle(bundle.id)
        await self.db.execute(
            """
            INSERT OR REPLACE INTO bundles
            (id, title, description, search_terms, feed_ids, priority, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                bundle.id,
                bundle.title,
                bundle.description,
                json.dumps(list(bundle.search_terms)),
                json.dumps(list(bundle.feed_ids)),
                bundle.priority,
                to_iso(utc_now()),
            ),
        )
        changed = existing is None or existing.criteria() != bundle.criteria()
        if changed:
            logger.info(f"Bundle criteria changed: {bundle.id} ({bundle.title})")
        return changed
