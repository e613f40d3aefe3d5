"""
Source Factory - Creates feed adapters from configuration.
"""
import logging

from ingestion.base import SourceAdapter
from ingestion.rss import RSSAdapter
from services.config import FeedConfig

logger = logging.getLogger(__name__)

# Feed types served as RSS/Atom documents
RSS_FEED_TYPES = ("rss", "youtube", "googlenews")


def create_source_adapter(feed: FeedConfig, timeout: float = 30) -> SourceAdapter:
    """
    Create a feed adapter from configuration.

    Args:
        feed: Configuration for the feed
        timeout: HTTP timeout in seconds

    Returns:
        Configured SourceAdapter instance

    Raises:
        ValueError: If the feed type has no adapter or the feed has no url
    """
    feed_type = feed.type.lower()

    if feed_type in RSS_FEED_TYPES:
        if not feed.url:
            raise ValueError(f"Feed {feed.id} requires 'url' field")
        return RSSAdapter(feed.url, timeout=timeout)

    raise ValueError(f"No adapter for feed type: {feed_type}")
