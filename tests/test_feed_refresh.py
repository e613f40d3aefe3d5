"""Tests for the feed refresh workflow and the RSS adapter."""

from typing import List

import pytest

from conftest import make_item
from ingestion.base import FeedItem, SourceAdapter
from ingestion.rss import RSSAdapter, parse_feed
from ingestion.source_factory import create_source_adapter
from services.config import FeedConfig
from workflows.feed_refresh import FeedRefresher

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example</title>
    <item>
      <title>Senate Passes New Bill</title>
      <link>https://example.com/senate</link>
      <guid>example-1</guid>
      <pubDate>Mon, 02 Mar 2026 10:30:00 GMT</pubDate>
      <description>The bill now goes to the house.</description>
      <category>Politics</category>
    </item>
    <item>
      <title>Second item</title>
      <link>https://example.com/second</link>
    </item>
  </channel>
</rss>
"""


class StaticAdapter(SourceAdapter):
    def __init__(self, items: List[FeedItem]):
        self.items = items

    async def fetch_items(self) -> List[FeedItem]:
        return self.items


class FailingAdapter(SourceAdapter):
    async def fetch_items(self) -> List[FeedItem]:
        raise ConnectionError("connection refused")


FEEDS = [
    FeedConfig(id="a", title="Feed A", url="https://example.com/a.xml"),
    FeedConfig(id="b", title="Feed B", url="https://example.com/b.xml"),
    FeedConfig(id="broken", title="Broken", url="https://example.com/broken.xml"),
]


def adapter_for(feed: FeedConfig) -> SourceAdapter:
    if feed.id == "broken":
        return FailingAdapter()
    return StaticAdapter([make_item(f"{feed.title} story", url=f"https://example.com/{feed.id}/1")])


class TestFeedRefresher:
    async def test_refresh_summary(self, ctx):
        refresher = FeedRefresher(ctx.ingestor, ctx.health, ctx.activity_log, adapter_factory=adapter_for, group_delay=0)

        summary = await refresher.refresh_feeds(FEEDS)

        assert summary.success_count == 2
        assert summary.failed_count == 1
        assert summary.failed_feeds == [{"id": "broken", "title": "Broken", "error": "connection refused"}]
        assert await ctx.stories.count() == 2

    async def test_health_queued(self, ctx):
        for feed in FEEDS:
            await ctx.feeds.upsert_feed(feed.id, feed.title, feed.url)
        refresher = FeedRefresher(ctx.ingestor, ctx.health, ctx.activity_log, adapter_factory=adapter_for, group_delay=0)

        await refresher.refresh_feeds(FEEDS)
        pending = ctx.health.pending
        assert pending["a"].success and pending["b"].success
        assert pending["broken"].error == "connection refused"

        await ctx.health.flush()
        assert (await ctx.feeds.get_feed("broken")).error_count == 1
        assert (await ctx.feeds.get_feed("a")).last_successful_fetch is not None

    async def test_progress_reported(self, ctx):
        refresher = FeedRefresher(ctx.ingestor, ctx.health, ctx.activity_log, adapter_factory=adapter_for, group_delay=0)

        await refresher.refresh_feeds(FEEDS)

        progress = [m.metadata["progress"] for m in ctx.activity_log.get_messages() if m.level == "progress"]
        assert progress == [{"current": 2, "total": 3}, {"current": 3, "total": 3}]

    async def test_unsupported_feed_type_fails_alone(self, ctx):
        refresher = FeedRefresher(ctx.ingestor, ctx.health, ctx.activity_log, group_delay=0)
        feeds = [FeedConfig(id="t", title="Tweets", url="https://x.com/someone", type="twitter")]

        summary = await refresher.refresh_feeds(feeds)

        assert summary.failed_count == 1
        assert "twitter" in summary.failed_feeds[0]["error"]


class TestSourceFactory:
    def test_rss_like_types(self):
        for feed_type in ("rss", "youtube", "googlenews"):
            feed = FeedConfig(id="f", title="F", url="https://example.com/f.xml", type=feed_type)
            assert isinstance(create_source_adapter(feed), RSSAdapter)

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            create_source_adapter(FeedConfig(id="f", title="F", url="https://x.com/f", type="twitter"))


class TestParseFeed:
    def test_entries_normalized(self):
        first, second = parse_feed(RSS)

        assert first.title == "Senate Passes New Bill"
        assert first.story_url == "https://example.com/senate"
        assert first.guid == "example-1"
        assert first.pub_date == "2026-03-02T10:30:00+00:00"
        assert first.categories == ["Politics"]
        assert "house" in first.content_snippet

        assert second.identity_key() == "https://example.com/second"
        assert second.pub_date is None
