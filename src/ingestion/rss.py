"""
RSS/Atom adapter: fetches a feed over HTTP and normalizes its entries
"""

from datetime import datetime, timezone
from typing import List, Optional
import feedparser
import httpx

from ingestion.base import SourceAdapter, FeedItem


def _entry_date(entry) -> Optional[str]:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        return datetime(*parsed[:6], tzinfo=timezone.utc).isoformat()
    return entry.get("published") or entry.get("updated")


def _entry_thumbnail(entry) -> Optional[str]:
    for media in entry.get("media_thumbnail", []) or []:
        if media.get("url"):
            return media["url"]
    for media in entry.get("media_content", []) or []:
        if media.get("url") and media.get("medium", "image") == "image":
            return media["url"]
    return None


def parse_feed(content: bytes) -> List[FeedItem]:
    feed = feedparser.parse(content)
    items: List[FeedItem] = []

    for entry in feed.entries:
        items.append(
            FeedItem(
                title=entry.get("title", ""),
                link=entry.get("link"),
                guid=entry.get("id"),
                pub_date=_entry_date(entry),
                content_snippet=entry.get("summary"),
                description=entry.get("description"),
                author=entry.get("author"),
                categories=[tag.get("term", "") for tag in entry.get("tags", []) if tag.get("term")],
                thumbnail=_entry_thumbnail(entry),
            )
        )

    return items


class RSSAdapter(SourceAdapter):
    def __init__(self, feed_url: str, timeout: float = 30):
        self.feed_url = feed_url
        self.timeout = timeout

    async def fetch_items(self) -> List[FeedItem]:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            resp = await client.get(self.feed_url)
            resp.raise_for_status()
        return parse_feed(resp.content)
