"""
Loads and handles config from config.yml
Storage paths (DATABASE_PATH, LOCAL_CACHE_PATH) can be overridden from .env
"""
import logging
import os
from typing import List, Dict, Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from core.entities import Bundle

logger = logging.getLogger(__name__)


class FeedConfig(BaseModel):
    """Configuration for a single feed."""
    id: str
    title: str
    url: str
    type: str = "rss"  # rss, youtube, googlenews, twitter
    enabled: bool = True


class BundleConfig(BaseModel):
    """Bundle definition used to seed the bundle repository."""
    id: str
    title: str
    description: Optional[str] = None
    search_terms: List[str] = []
    feed_ids: List[str] = []  # empty means all feeds
    priority: str = "normal"

    def to_bundle(self) -> Bundle:
        return Bundle(
            id=self.id,
            title=self.title,
            description=self.description,
            search_terms=list(self.search_terms),
            feed_ids=list(self.feed_ids),
            priority=self.priority,
        )


class Config(BaseModel):
    # Storage
    DATABASE_PATH: str = "data/feeds.db"
    LOCAL_CACHE_PATH: str = "data/local_cache.json"

    # Story cache
    CACHE_MAX_AGE_HOURS: float = 168
    LOCAL_CACHE_CAPACITY_BYTES: int = 5 * 1024 * 1024

    # Ingestion and matching
    INGEST_BATCH_SIZE: int = 5
    INGEST_BATCH_DELAY: float = 0.5
    REFRESH_CONCURRENCY: int = 2
    REFRESH_GROUP_DELAY: float = 3.0
    FETCH_TIMEOUT: float = 30
    RETENTION_DAYS: int = 30
    SEARCH_WINDOW_DAYS: int = 30
    SEARCH_LIMIT: int = 1000
    LOW_SIGNAL_FEED_TYPE: str = "twitter"

    # Health batcher
    HEALTH_WINDOW_SECONDS: float = 5.0
    HEALTH_MAX_BATCH: int = 100

    feeds: List[FeedConfig] = []
    bundles: List[BundleConfig] = []

    def enabled_feeds(self) -> List[FeedConfig]:
        return [feed for feed in self.feeds if feed.enabled]


def _get_config_path() -> str:
    """Get the path to config.yml, handling different working directories."""
    # Try relative path first
    if os.path.exists('resources/config.yml'):
        return 'resources/config.yml'

    # Try from project root
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    config_path = os.path.join(project_root, 'resources', 'config.yml')
    if os.path.exists(config_path):
        return config_path

    raise FileNotFoundError("Cannot find resources/config.yml")


def _parse_entries(model, entries: List[Dict[str, Any]], kind: str) -> list:
    parsed = []
    for data in entries or []:
        try:
            parsed.append(model(**data))
        except Exception as e:
            logger.error(f"Failed to parse {kind} entry {data!r}: {e}")
    return parsed


def parse_config(data: Dict[str, Any]) -> Config:
    """Build a Config from already loaded YAML data."""
    settings = {key: value for key, value in data.items() if key not in ("feeds", "bundles")}
    return Config(
        **settings,
        feeds=_parse_entries(FeedConfig, data.get("feeds", []), "feed"),
        bundles=_parse_entries(BundleConfig, data.get("bundles", []), "bundle"),
    )


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from config.yml; storage paths may come from .env."""
    load_dotenv()

    config_path = path or _get_config_path()
    with open(config_path, 'r') as file:
        data = yaml.safe_load(file) or {}

    for key in ("DATABASE_PATH", "LOCAL_CACHE_PATH"):
        if os.getenv(key):
            data[key] = os.getenv(key)

    return parse_config(data)
