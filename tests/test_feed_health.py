"""Tests for the feed health batcher and feed classification."""

import asyncio
from datetime import timedelta

from core.dates import to_iso, utc_now
from services.feed_health import FeedHealthBatcher


async def register(ctx, *feed_ids):
    for feed_id in feed_ids:
        await ctx.feeds.upsert_feed(feed_id, f"Feed {feed_id}", f"https://example.com/{feed_id}.xml")


class TestCoalescing:
    async def test_success_after_error_wins(self, ctx):
        ctx.health.queue_error("feedA", "timeout")
        ctx.health.queue_success("feedA")

        assert ctx.health.pending["feedA"].success is True

    async def test_error_after_success_replaces_it(self, ctx):
        ctx.health.queue_success("feedA")
        ctx.health.queue_error("feedA", "timeout")

        pending = ctx.health.pending["feedA"]
        assert pending.success is False
        assert pending.error == "timeout"

    async def test_first_error_in_window_kept(self, ctx):
        ctx.health.queue_error("feedA", "timeout")
        ctx.health.queue_error("feedA", "404")

        assert ctx.health.pending["feedA"].error == "timeout"

    async def test_one_pending_update_per_feed(self, ctx):
        for _ in range(5):
            ctx.health.queue_success("feedA")
        ctx.health.queue_success("feedB")

        assert sorted(ctx.health.pending) == ["feedA", "feedB"]


class TestFlush:
    async def test_error_then_success_recorded_as_success(self, ctx):
        await register(ctx, "feedA")
        ctx.health.queue_error("feedA", "timeout")
        ctx.health.queue_success("feedA")

        assert await ctx.health.flush() == 1

        feed = await ctx.feeds.get_feed("feedA")
        assert feed.error_count == 0
        assert feed.last_error is None
        assert feed.last_successful_fetch is not None

    async def test_errors_accumulate_across_flushes(self, ctx):
        await register(ctx, "feedA")
        for message in ("timeout", "404"):
            ctx.health.queue_error("feedA", message)
            await ctx.health.flush()

        feed = await ctx.feeds.get_feed("feedA")
        assert feed.error_count == 2
        assert feed.last_error == "404"
        assert feed.last_fetched is not None

    async def test_success_resets_error_count(self, ctx):
        await register(ctx, "feedA")
        ctx.health.queue_error("feedA", "timeout")
        await ctx.health.flush()
        ctx.health.queue_success("feedA")
        await ctx.health.flush()

        assert (await ctx.feeds.get_feed("feedA")).error_count == 0

    async def test_unknown_feed_skipped(self, ctx):
        await register(ctx, "feedA")
        ctx.health.queue_success("feedA")
        ctx.health.queue_error("ghost", "timeout")

        assert await ctx.health.flush() == 1
        assert await ctx.feeds.get_feed("ghost") is None

    async def test_failed_batch_dropped(self, ctx, monkeypatch):
        await register(ctx, "feedA")

        async def broken(operations):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(ctx.db, "execute_batch", broken)
        ctx.health.queue_error("feedA", "timeout")

        assert await ctx.health.flush() == 0
        assert ctx.health.pending == {}
        assert ctx.activity_log.get_messages()[-1].level == "error"

    async def test_empty_flush(self, ctx):
        assert await ctx.health.flush() == 0


class TestTriggers:
    async def test_window_elapsed_flushes(self, ctx):
        await register(ctx, "feedA")
        batcher = FeedHealthBatcher(ctx.db, ctx.activity_log, window_seconds=0.05, max_batch=100)
        batcher.queue_error("feedA", "timeout")

        await asyncio.sleep(0.2)
        assert batcher.pending == {}

        await batcher.close()
        assert (await ctx.feeds.get_feed("feedA")).error_count == 1

    async def test_max_batch_flushes_immediately(self, ctx):
        await register(ctx, "feedA", "feedB")
        batcher = FeedHealthBatcher(ctx.db, ctx.activity_log, window_seconds=60, max_batch=2)
        batcher.queue_success("feedA")
        assert "feedA" in batcher.pending

        batcher.queue_success("feedB")
        await asyncio.sleep(0.01)

        assert batcher.pending == {}
        await batcher.close()
        assert (await ctx.feeds.get_feed("feedB")).last_successful_fetch is not None

    async def test_close_flushes_pending(self, ctx):
        await register(ctx, "feedA")
        batcher = FeedHealthBatcher(ctx.db, ctx.activity_log, window_seconds=60)
        batcher.queue_error("feedA", "timeout")

        await batcher.close()

        assert batcher.pending == {}
        assert (await ctx.feeds.get_feed("feedA")).error_count == 1


class TestClassification:
    async def test_classify_feeds(self, ctx):
        await register(ctx, "dead", "stale", "flaky", "fine")
        old = to_iso(utc_now() - timedelta(days=40))
        await ctx.db.execute("UPDATE feeds SET error_count = 5 WHERE id = 'dead'")
        await ctx.db.execute("UPDATE feeds SET last_successful_fetch = ? WHERE id = 'stale'", (old,))
        await ctx.db.execute("UPDATE feeds SET error_count = 1 WHERE id = 'flaky'")

        status = await ctx.feeds.classify_feeds()

        assert [f.id for f in status["dead"]] == ["dead", "stale"]
        assert [f.id for f in status["problematic"]] == ["flaky"]
        assert [f.id for f in status["healthy"]] == ["fine"]
        assert status["dead"][0].reason == "Failed 5 times"

    async def test_never_fetched_old_feed_is_dead(self, ctx):
        await register(ctx, "abandoned")
        await ctx.db.execute(
            "UPDATE feeds SET created_at = ? WHERE id = 'abandoned'",
            (to_iso(utc_now() - timedelta(days=45)),),
        )

        status = await ctx.feeds.classify_feeds()

        assert [f.id for f in status["dead"]] == ["abandoned"]
        assert status["dead"][0].reason == "Never fetched successfully"

    async def test_upsert_keeps_health(self, ctx):
        await register(ctx, "feedA")
        await ctx.db.execute("UPDATE feeds SET error_count = 3 WHERE id = 'feedA'")

        await ctx.feeds.upsert_feed("feedA", "Renamed", "https://example.com/a.xml")

        feed = await ctx.feeds.get_feed("feedA")
        assert feed.title == "Renamed"
        assert feed.error_count == 3
