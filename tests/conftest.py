"""Shared fixtures: a fully wired context over a temporary SQLite database."""

from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import pytest

from core.dates import utc_now
from core.entities import Bundle
from ingestion.base import FeedItem
from services.activity_log import ActivityLog
from services.config import Config
from services.context import AppContext


def make_item(
    title: str,
    url: Optional[str] = None,
    snippet: Optional[str] = None,
    published: Optional[datetime] = None,
    **fields,
) -> FeedItem:
    published = published or utc_now() - timedelta(hours=1)
    return FeedItem(
        title=title,
        link=url,
        content_snippet=snippet,
        pub_date=published.isoformat(),
        **fields,
    )


def make_items(count: int, prefix: str = "Story") -> List[FeedItem]:
    return [make_item(f"{prefix} {i}", url=f"https://example.com/{prefix.lower()}/{i}") for i in range(count)]


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        DATABASE_PATH=str(tmp_path / "feeds.db"),
        LOCAL_CACHE_PATH=str(tmp_path / "local_cache.json"),
        INGEST_BATCH_DELAY=0,
        REFRESH_GROUP_DELAY=0,
        HEALTH_WINDOW_SECONDS=60,
    )


@pytest.fixture
async def ctx(config: Config):
    context = AppContext.build(config)
    await context.db.init_tables()
    yield context
    await context.close()


@pytest.fixture
def activity_log() -> ActivityLog:
    return ActivityLog()


@pytest.fixture
def senate_bundle() -> Bundle:
    return Bundle(id="senate", title="Senate")


@pytest.fixture
def ai_bundle() -> Bundle:
    return Bundle(
        id="ai-coding",
        title="AI coding assistants",
        description="Tools that write code",
        search_terms=["code generation", "copilot"],
    )
