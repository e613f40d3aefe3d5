"""Tests for the feed item ingestor."""

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from conftest import make_item, make_items
from core.dates import utc_now
from core.entities import BundleMatch, IngestResult
from ingestion.base import FeedItem
from ingestion.ingestor import build_story_record, story_id


class TestStoryIdentity:
    def test_same_feed_and_url_same_id(self):
        assert story_id("feed-1", "https://e.com/a") == story_id("feed-1", "https://e.com/a")

    def test_feed_is_part_of_identity(self):
        assert story_id("feed-1", "https://e.com/a") != story_id("feed-2", "https://e.com/a")

    def test_guid_used_without_url(self):
        item = FeedItem(title="No link", guid="tag:example.com,2026:1")
        record = build_story_record("feed-1", "Feed", "rss", item, utc_now())

        assert record.id == story_id("feed-1", "tag:example.com,2026:1")
        assert record.url == ""

    def test_title_used_without_url_or_guid(self):
        item = FeedItem(title="Orphan item")
        record = build_story_record("feed-1", "Feed", "rss", item, utc_now())

        assert record.id == story_id("feed-1", "Orphan item")


class TestIngest:
    async def test_idempotent(self, ctx):
        item = make_item("Senate Passes New Bill", url="https://e.com/senate")

        first = await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item])
        second = await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item])

        assert first == IngestResult(saved=1, skipped=0, failed=0)
        assert second == IngestResult(saved=0, skipped=1, failed=0)
        assert await ctx.stories.count() == 1

    async def test_reingest_refreshes_last_seen_and_metrics(self, ctx):
        item = make_item("Popular post", url="https://e.com/popular", metrics={"likes": 1})
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item])
        before = await ctx.stories.get(story_id("feed-1", "https://e.com/popular"))

        again = make_item("Popular post", url="https://e.com/popular", metrics={"likes": 42})
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [again])
        after = await ctx.stories.get(story_id("feed-1", "https://e.com/popular"))

        assert after.first_seen_at == before.first_seen_at
        assert after.last_seen_at >= before.last_seen_at
        assert after.metrics == {"likes": 42}

    async def test_duplicates_in_one_call_skipped(self, ctx):
        item = make_item("Twice", url="https://e.com/twice")
        result = await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item, item])

        assert result == IngestResult(saved=1, skipped=1, failed=0)

    async def test_many_items_across_chunks(self, ctx):
        result = await ctx.ingestor.ingest("feed-1", "Feed One", "rss", make_items(12))

        assert result.saved == 12
        assert await ctx.stories.count("feed-1") == 12

    async def test_invalid_date_replaced_with_now(self, ctx):
        item = FeedItem(title="Bad date", link="https://e.com/bad-date", pub_date="not a date")
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item])

        story = await ctx.stories.get(story_id("feed-1", "https://e.com/bad-date"))
        assert abs(story.publish_date - utc_now()) < timedelta(minutes=1)

    async def test_future_date_replaced_with_now(self, ctx):
        future = (utc_now() + timedelta(days=30)).isoformat()
        item = FeedItem(title="From the future", link="https://e.com/future", pub_date=future)
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item])

        story = await ctx.stories.get(story_id("feed-1", "https://e.com/future"))
        assert story.publish_date <= utc_now()

    async def test_rfc822_date_kept(self, ctx):
        item = FeedItem(title="Dated", link="https://e.com/dated", pub_date="Mon, 02 Mar 2026 10:30:00 GMT")
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item])

        story = await ctx.stories.get(story_id("feed-1", "https://e.com/dated"))
        assert story.publish_date.isoformat() == "2026-03-02T10:30:00+00:00"

    async def test_concurrent_ingest_of_same_feed(self, ctx, senate_bundle):
        await ctx.bundles.save_bundle(senate_bundle)
        items = [make_item(f"Senate story {i}", url=f"https://e.com/senate/{i}") for i in range(5)]

        first, second = await asyncio.gather(
            ctx.ingestor.ingest("feed-1", "Feed One", "rss", items),
            ctx.ingestor.ingest("feed-1", "Feed One", "rss", items),
        )

        assert first.failed == second.failed == 0
        assert first.saved + second.saved == 5
        assert first.skipped + second.skipped == 5
        assert await ctx.stories.count() == 5
        assert await ctx.match_index.count("senate") == 5

    async def test_failing_chunk_does_not_stop_others(self, ctx, monkeypatch):
        original = ctx.db.execute_batch
        calls = {"n": 0}

        async def flaky(operations):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("write failed")
            return await original(operations)

        monkeypatch.setattr(ctx.db, "execute_batch", flaky)
        result = await ctx.ingestor.ingest("feed-1", "Feed One", "rss", make_items(7))

        assert result == IngestResult(saved=2, skipped=0, failed=5)
        assert await ctx.stories.count() == 2
        assert any(m.level == "error" for m in ctx.activity_log.get_messages())


class TestMatchingOnIngest:
    async def test_new_item_matched(self, ctx, senate_bundle):
        await ctx.bundles.save_bundle(senate_bundle)
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [make_item("Senate Passes New Bill", url="https://e.com/s")])

        matches = await ctx.match_index.get_bundle_items("senate")
        assert len(matches) == 1
        assert matches[0].url == "https://e.com/s"
        assert matches[0].relevance_score == 20 + 15 + 5 + 3

    async def test_unrelated_item_not_matched(self, ctx, senate_bundle):
        await ctx.bundles.save_bundle(senate_bundle)
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [make_item("Weather update", url="https://e.com/w")])

        assert await ctx.match_index.count("senate") == 0

    async def test_existing_item_not_rematched(self, ctx, senate_bundle):
        item = make_item("Senate Passes New Bill", url="https://e.com/s")
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item])

        await ctx.bundles.save_bundle(senate_bundle)
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [item])

        assert await ctx.match_index.count("senate") == 0

    async def test_save_bundle_rematches_stored_stories(self, ctx, senate_bundle):
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [make_item("Senate Passes New Bill", url="https://e.com/s")])

        assert await ctx.save_bundle(senate_bundle) is True
        assert await ctx.match_index.count("senate") == 1
        assert await ctx.save_bundle(senate_bundle) is False


class TestRetention:
    async def test_cleanup_removes_old_stories_and_matches(self, ctx, senate_bundle):
        await ctx.bundles.save_bundle(senate_bundle)
        old = make_item("Senate old news", url="https://e.com/old", published=utc_now() - timedelta(days=40))
        fresh = make_item("Senate fresh news", url="https://e.com/fresh")
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [old, fresh])
        await ctx.db.execute(
            "UPDATE feed_stories SET first_seen_at = ? WHERE url = ?",
            ((utc_now() - timedelta(days=40)).isoformat(), "https://e.com/old"),
        )

        deleted = await ctx.cleanup()

        assert deleted == {"stories": 1, "bundle_items": 1}
        assert await ctx.stories.count() == 1
        assert [m.url for m in await ctx.match_index.get_bundle_items("senate")] == ["https://e.com/fresh"]


class TestReplaceBundleItems:
    async def test_failed_replace_keeps_previous_matches(self, ctx, senate_bundle):
        await ctx.bundles.save_bundle(senate_bundle)
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [make_item("Senate Passes New Bill", url="https://e.com/s")])
        broken = BundleMatch("senate", "feed-1", "x", ["senate"], 10, None, "https://e.com/x", utc_now())

        with pytest.raises(sqlite3.IntegrityError):
            await ctx.match_index.replace_bundle_items("senate", [broken])

        assert [m.url for m in await ctx.match_index.get_bundle_items("senate")] == ["https://e.com/s"]

    async def test_replace_swaps_matches(self, ctx, senate_bundle):
        await ctx.bundles.save_bundle(senate_bundle)
        await ctx.ingestor.ingest("feed-1", "Feed One", "rss", [make_item("Senate Passes New Bill", url="https://e.com/s")])
        replacement = BundleMatch("senate", "feed-1", "n", ["senate"], 10, "Senate news", "https://e.com/n", utc_now())

        assert await ctx.match_index.replace_bundle_items("senate", [replacement]) == 1
        assert [m.url for m in await ctx.match_index.get_bundle_items("senate")] == ["https://e.com/n"]
