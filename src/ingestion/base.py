"""
Base classes for Ingestion
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Union
from pydantic import BaseModel


class FeedItem(BaseModel):
    """
    Normalized item handed over by a feed adapter. Its identity is not
    trusted; the ingestor derives a canonical one.
    """
    title: str
    link: Optional[str] = None
    url: Optional[str] = None
    guid: Optional[str] = None
    pub_date: Optional[Union[datetime, str]] = None
    content_snippet: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    author: Optional[str] = None
    categories: List[str] = []
    thumbnail: Optional[str] = None
    metrics: Optional[Dict[str, float]] = None

    @property
    def story_url(self) -> str:
        return self.link or self.url or ""

    def identity_key(self) -> str:
        return self.story_url or self.guid or self.title


class SourceAdapter(ABC):
    """
    Base interface for all feed adapters.
    """

    @abstractmethod
    async def fetch_items(self) -> List[FeedItem]:
        """
        Fetch the current items of the feed.
        Raises on transport errors so the caller can record feed health.
        """
        raise NotImplementedError
