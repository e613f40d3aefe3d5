"""
Workflows module - Orchestration of feed refreshes.
"""
from workflows.feed_refresh import FeedRefresher

__all__ = [
    "FeedRefresher",
]
