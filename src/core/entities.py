from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any


@dataclass(frozen=True)
class StoryRecord:
    """
    Durable, deduplicated record of one feed item.
    """
    id: str
    feed_id: str
    feed_title: str
    feed_type: str
    title: str
    url: str
    publish_date: datetime
    first_seen_at: datetime
    last_seen_at: datetime
    snippet: Optional[str] = None
    description: Optional[str] = None
    guid: Optional[str] = None
    thumbnail: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    metrics: Optional[Dict[str, float]] = None


@dataclass(frozen=True)
class Bundle:
    """
    User-defined topical collection used as matching criteria.
    """
    id: str
    title: str
    description: Optional[str] = None
    search_terms: List[str] = field(default_factory=list)
    feed_ids: List[str] = field(default_factory=list)
    priority: str = "normal"

    def applies_to_feed(self, feed_id: str) -> bool:
        return not self.feed_ids or feed_id in self.feed_ids

    def criteria(self) -> tuple:
        return (self.title, tuple(self.search_terms), tuple(sorted(self.feed_ids)))


@dataclass(frozen=True)
class BundleMatch:
    """
    Scored association between a StoryRecord and a Bundle.
    """
    bundle_id: str
    feed_id: str
    item_id: str
    matched_terms: List[str]
    relevance_score: float
    title: str
    url: str
    publish_date: Optional[datetime]
    feed_title: str = ""
    feed_type: str = "rss"
    snippet: Optional[str] = None
    thumbnail: Optional[str] = None
    inserted_at: Optional[datetime] = None


@dataclass(frozen=True)
class Tombstone:
    story_url: str
    bundle_id: str
    actor_id: str
    removed_at: datetime


@dataclass(frozen=True)
class IngestResult:
    saved: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class FeedHealth:
    """
    Health snapshot of a single feed, as recorded by the health batcher.
    """
    id: str
    title: str
    url: str
    type: str
    error_count: int = 0
    last_error: Optional[str] = None
    last_fetched: Optional[datetime] = None
    last_successful_fetch: Optional[datetime] = None
    is_dead: bool = False
    reason: Optional[str] = None


@dataclass
class RefreshSummary:
    success_count: int = 0
    failed_count: int = 0
    failed_feeds: List[Dict[str, Any]] = field(default_factory=list)
