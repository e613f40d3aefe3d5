"""Tests for the local store and the individual cache tiers."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from cache.chunking import build_manifest
from cache.local_store import LocalStore
from cache.tiers import LocalStoreTier, MemoryTier, RemoteTier
from core.entities import Bundle
from core.errors import LocalStoreQuotaExceededError
from core.schemas import CacheEntry, CachedStory

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def entry(bundle_id: str, count: int = 3, description: str = "") -> CacheEntry:
    stories = [
        CachedStory(
            id=f"{bundle_id}-{i}",
            url=f"https://example.com/{bundle_id}/{i}",
            title=f"Story {i}",
            description=description or None,
            published_at=NOW,
            relevance_score=50 - i,
            order=i,
        )
        for i in range(count)
    ]
    bundle = Bundle(id=bundle_id, title=f"Bundle {bundle_id}")
    return CacheEntry(
        manifest=build_manifest(bundle, stories, 1, now=NOW, max_age_hours=168),
        stories=stories,
    )


def entry_size(e: CacheEntry) -> int:
    key = LocalStoreTier.KEY_PREFIX + e.manifest.bundle_id
    return len(key.encode("utf-8")) + len(e.model_dump_json().encode("utf-8"))


class TestLocalStore:
    async def test_set_get_remove(self, tmp_path: Path):
        store = LocalStore(str(tmp_path / "store.json"))
        await store.set("a", "1")

        assert await store.get("a") == "1"
        assert await store.remove("a") is True
        assert await store.get("a") is None
        assert await store.remove("a") is False

    async def test_keys_in_write_order(self, tmp_path: Path):
        store = LocalStore(str(tmp_path / "store.json"))
        for key in ("p_a", "other", "p_b", "p_c"):
            await store.set(key, "v")
        # rewriting a key makes it the newest
        await store.set("p_a", "v2")

        assert await store.keys("p_") == ["p_b", "p_c", "p_a"]

    async def test_persists_to_disk(self, tmp_path: Path):
        path = tmp_path / "store.json"
        await LocalStore(str(path)).set("a", "1")

        assert json.loads(path.read_text()) == {"entries": {"a": "1"}}
        assert await LocalStore(str(path)).get("a") == "1"

    async def test_quota(self, tmp_path: Path):
        store = LocalStore(str(tmp_path / "store.json"), capacity_bytes=10)
        await store.set("a", "12345")

        with pytest.raises(LocalStoreQuotaExceededError):
            await store.set("b", "123456")
        assert await store.get("b") is None
        assert await store.usage() == 6

    async def test_unreadable_file_starts_empty(self, tmp_path: Path):
        path = tmp_path / "store.json"
        path.write_text("not json")

        store = LocalStore(str(path))
        assert await store.keys() == []
        await store.set("a", "1")
        assert await store.get("a") == "1"


class TestMemoryTier:
    async def test_round_trip_and_clear(self):
        tier = MemoryTier()
        await tier.put(entry("b1"))

        loaded = await tier.get("b1")
        assert loaded == entry("b1")
        assert (await tier.manifest("b1")).bundle_id == "b1"

        await tier.clear("b1")
        assert await tier.get("b1") is None

    async def test_returns_copies(self):
        tier = MemoryTier()
        await tier.put(entry("b1"))

        loaded = await tier.get("b1")
        loaded.stories.clear()

        assert len((await tier.get("b1")).stories) == 3


class TestLocalStoreTier:
    async def test_round_trip(self, tmp_path: Path, activity_log):
        tier = LocalStoreTier(LocalStore(str(tmp_path / "store.json")), activity_log)
        await tier.put(entry("b1"))

        assert await tier.get("b1") == entry("b1")

    async def test_corrupt_entry_removed(self, tmp_path: Path, activity_log):
        store = LocalStore(str(tmp_path / "store.json"))
        tier = LocalStoreTier(store, activity_log)
        await store.set(LocalStoreTier.KEY_PREFIX + "b1", "not json")

        assert await tier.get("b1") is None
        assert await store.keys() == []

    async def test_quota_evicts_oldest_half(self, tmp_path: Path, activity_log):
        size = entry_size(entry("b1"))
        store = LocalStore(str(tmp_path / "store.json"), capacity_bytes=4 * size + size // 2)
        tier = LocalStoreTier(store, activity_log)

        for bundle_id in ("b1", "b2", "b3", "b4"):
            await tier.put(entry(bundle_id))
        await tier.put(entry("b5"))

        keys = await store.keys(LocalStoreTier.KEY_PREFIX)
        assert keys == [LocalStoreTier.KEY_PREFIX + b for b in ("b3", "b4", "b5")]
        assert await tier.get("b1") is None
        assert await tier.get("b5") == entry("b5")

    async def test_entry_too_large_is_skipped(self, tmp_path: Path, activity_log):
        store = LocalStore(str(tmp_path / "store.json"), capacity_bytes=1000)
        tier = LocalStoreTier(store, activity_log)

        await tier.put(entry("b1", description="z" * 2000))

        assert await tier.get("b1") is None
        assert activity_log.get_messages()[-1].level == "warning"


class TestRemoteTier:
    async def test_round_trip_through_chunks(self, ctx):
        tier = RemoteTier(ctx.db)
        written = entry("b1", count=250)
        await tier.put(written)

        loaded = await tier.get("b1")
        assert [(s.id, s.title, s.url, s.relevance_score, s.order) for s in loaded.stories] == [
            (s.id, s.title, s.url, s.relevance_score, s.order) for s in written.stories
        ]
        assert loaded.manifest.chunk_count == 3

    async def test_put_replaces_previous_chunks(self, ctx):
        tier = RemoteTier(ctx.db)
        await tier.put(entry("b1", count=250))
        await tier.put(entry("b1", count=5))

        assert len((await tier.get("b1")).stories) == 5
        row = await ctx.db.fetchone("SELECT COUNT(*) FROM story_cache_chunks WHERE bundle_id = ?", ("b1",))
        assert row[0] == 1

    async def test_get_updates_last_accessed(self, ctx):
        tier = RemoteTier(ctx.db)
        await tier.put(entry("b1"))

        await tier.get("b1")

        manifest = await tier.manifest("b1")
        assert manifest.last_accessed_at > NOW
        assert manifest.last_refreshed_at == NOW

    async def test_clear(self, ctx):
        tier = RemoteTier(ctx.db)
        await tier.put(entry("b1"))
        await tier.clear("b1")

        assert await tier.get("b1") is None
        assert await tier.manifest("b1") is None
