"""
Pydantic schemas for the persisted story cache
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class CachedStory(BaseModel):
    """
    Lightweight projection of a story as stored in a bundle's cache
    """
    id: str
    url: str
    title: str
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    source_type: Literal["article", "video", "tweet", "social"] = "article"
    source_name: str = ""
    published_at: Optional[datetime] = None
    relevance_score: float = Field(0.0, ge=0.0)
    order: int = 0


class CacheChunk(BaseModel):
    """
    Size-bounded slice of a bundle's cached stories
    """
    bundle_id: str
    chunk_index: int
    stories: List[CachedStory]
    story_count: int
    size_estimate: int
    created_at: datetime

    @property
    def id(self) -> str:
        return f"chunk-{self.chunk_index}"


class DateRange(BaseModel):
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None


class CacheSummary(BaseModel):
    total_stories: int = 0
    stories_by_type: Dict[str, int] = {}
    stories_by_source: Dict[str, int] = {}
    date_range: DateRange = DateRange()


class CacheManifest(BaseModel):
    """
    One per bundle: summary and staleness metadata of the cached result set
    """
    bundle_id: str
    bundle_title: str
    last_refreshed_at: datetime
    last_accessed_at: datetime
    story_count: int
    chunk_count: int
    search_terms: List[str] = []
    feed_ids: List[str] = []
    max_age_hours: float = 168
    status: Literal["active", "refreshing", "error"] = "active"
    cache_version: int = 1
    summary: CacheSummary = CacheSummary()

    def age_hours(self, now: datetime) -> float:
        return (now - self.last_refreshed_at).total_seconds() / 3600

    def is_fresh(self, now: datetime, max_age_hours: Optional[float] = None) -> bool:
        limit = max_age_hours if max_age_hours is not None else self.max_age_hours
        return self.age_hours(now) <= limit


class CacheEntry(BaseModel):
    """
    What every cache tier stores for a bundle: manifest plus ordered stories
    """
    manifest: CacheManifest
    stories: List[CachedStory]
