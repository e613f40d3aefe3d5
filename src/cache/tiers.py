"""
Cache tiers for bundle story sets. Every tier stores a CacheEntry per bundle
behind the same get/put/clear interface; the story cache walks them in order.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from cache.chunking import pack_chunks
from cache.local_store import LocalStore
from core.dates import to_iso, utc_now
from core.errors import LocalStoreQuotaExceededError
from core.schemas import CacheChunk, CacheEntry, CacheManifest
from services.activity_log import ActivityLog
from services.database import Database

logger = logging.getLogger(__name__)


class Tier(ABC):
    name: str

    @abstractmethod
    async def get(self, bundle_id: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    async def clear(self, bundle_id: str) -> None:
        raise NotImplementedError

    async def manifest(self, bundle_id: str) -> Optional[CacheManifest]:
        entry = await self.get(bundle_id)
        return entry.manifest if entry else None


class MemoryTier(Tier):
    name = "memory"

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, bundle_id: str) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._entries.get(bundle_id)
        return entry.model_copy(deep=True) if entry else None

    async def put(self, entry: CacheEntry) -> None:
        async with self._lock:
            self._entries[entry.manifest.bundle_id] = entry.model_copy(deep=True)

    async def clear(self, bundle_id: str) -> None:
        async with self._lock:
            self._entries.pop(bundle_id, None)


class LocalStoreTier(Tier):
    name = "local"
    KEY_PREFIX = "bundle_stories_cache_"

    def __init__(self, store: LocalStore, activity_log: ActivityLog):
        self.store = store
        self.activity_log = activity_log

    def _key(self, bundle_id: str) -> str:
        return f"{self.KEY_PREFIX}{bundle_id}"

    async def get(self, bundle_id: str) -> Optional[CacheEntry]:
        key = self._key(bundle_id)
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Failed to load local cache for {bundle_id}: {e}")
            await self.store.remove(key)
            return None

    async def put(self, entry: CacheEntry) -> None:
        key = self._key(entry.manifest.bundle_id)
        payload = entry.model_dump_json()
        try:
            await self.store.set(key, payload)
            return
        except LocalStoreQuotaExceededError as e:
            logger.warning(f"{e}; evicting old bundle caches")

        evicted = await self.evict_oldest_half()
        try:
            await self.store.set(key, payload)
        except LocalStoreQuotaExceededError as e:
            logger.error(f"Local cache write failed after evicting {evicted} bundles: {e}")
            self.activity_log.warning(
                f"Local cache full, bundle {entry.manifest.bundle_id} kept only in memory and remote cache",
                bundle_id=entry.manifest.bundle_id,
            )

    async def evict_oldest_half(self) -> int:
        keys = await self.store.keys(self.KEY_PREFIX)
        to_remove = keys[:(len(keys) + 1) // 2]
        for key in to_remove:
            await self.store.remove(key)
        logger.info(f"Cleared {len(to_remove)} old caches to free up local space ({await self.store.usage()} bytes in use)")
        return len(to_remove)

    async def clear(self, bundle_id: str) -> None:
        await self.store.remove(self._key(bundle_id))


class RemoteTier(Tier):
    """
    Durable tier: one manifest row plus size-bounded chunk rows per bundle,
    written in a single transaction.
    """
    name = "remote"

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        self.db = database
        self.clock = clock

    async def manifest(self, bundle_id: str) -> Optional[CacheManifest]:
        row = await self.db.fetchone("SELECT manifest FROM story_cache WHERE bundle_id = ?", (bundle_id,))
        if row is None:
            return None
        return CacheManifest.model_validate_json(row["manifest"])

    async def get(self, bundle_id: str) -> Optional[CacheEntry]:
        manifest = await self.manifest(bundle_id)
        if manifest is None:
            return None

        now = self.clock()
        manifest.last_accessed_at = now
        await self.db.execute(
            "UPDATE story_cache SET last_accessed_at = ?, manifest = ? WHERE bundle_id = ?",
            (to_iso(now), manifest.model_dump_json(), bundle_id),
        )

        rows = await self.db.fetchall(
            "SELECT payload FROM story_cache_chunks WHERE bundle_id = ? ORDER BY chunk_index",
            (bundle_id,),
        )
        stories = []
        for row in rows:
            stories.extend(CacheChunk.model_validate_json(row["payload"]).stories)

        logger.info(f"Loaded {len(stories)} stories from remote cache for bundle {bundle_id}")
        return CacheEntry(manifest=manifest, stories=stories)

    async def put(self, entry: CacheEntry) -> None:
        manifest = entry.manifest
        chunks = pack_chunks(manifest.bundle_id, entry.stories, now=manifest.last_refreshed_at)
        manifest = manifest.model_copy(update={"chunk_count": len(chunks)})

        operations = [
            ("DELETE FROM story_cache_chunks WHERE bundle_id = ?", (manifest.bundle_id,)),
            (
                """INSERT OR REPLACE INTO story_cache
                   (bundle_id, manifest, last_refreshed_at, last_accessed_at)
                   VALUES (?, ?, ?, ?)""",
                (
                    manifest.bundle_id,
                    manifest.model_dump_json(),
                    to_iso(manifest.last_refreshed_at),
                    to_iso(manifest.last_accessed_at),
                ),
            ),
        ]
        for chunk in chunks:
            operations.append((
                """INSERT INTO story_cache_chunks (bundle_id, chunk_index, payload, size_estimate)
                   VALUES (?, ?, ?, ?)""",
                (chunk.bundle_id, chunk.chunk_index, chunk.model_dump_json(), chunk.size_estimate),
            ))

        await self.db.execute_batch(operations)
        logger.info(f"Saved {len(entry.stories)} stories in {len(chunks)} chunks to remote cache")

    async def clear(self, bundle_id: str) -> None:
        await self.db.execute_batch([
            ("DELETE FROM story_cache_chunks WHERE bundle_id = ?", (bundle_id,)),
            ("DELETE FROM story_cache WHERE bundle_id = ?", (bundle_id,)),
        ])
