import aiosqlite
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, List, Tuple
import logging

logger = logging.getLogger(__name__)

# Largest number of write operations committed in one batch
MAX_BATCH_OPS = 500

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS feeds (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        url TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL DEFAULT 'rss',
        enabled BOOLEAN DEFAULT 1,
        error_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        last_fetched TEXT,
        last_successful_fetch TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feed_stories (
        id TEXT PRIMARY KEY,
        feed_id TEXT NOT NULL,
        feed_title TEXT NOT NULL,
        feed_type TEXT NOT NULL,
        title TEXT NOT NULL,
        url TEXT NOT NULL,
        snippet TEXT,
        description TEXT,
        guid TEXT,
        thumbnail TEXT,
        categories TEXT NOT NULL DEFAULT '[]',
        metrics TEXT,
        publish_date TEXT NOT NULL,
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_feed_stories_publish_date ON feed_stories(publish_date)",
    "CREATE INDEX IF NOT EXISTS idx_feed_stories_feed_id ON feed_stories(feed_id)",
    "CREATE INDEX IF NOT EXISTS idx_feed_stories_first_seen ON feed_stories(first_seen_at)",
    """
    CREATE TABLE IF NOT EXISTS bundles (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        search_terms TEXT NOT NULL DEFAULT '[]',
        feed_ids TEXT NOT NULL DEFAULT '[]',
        priority TEXT NOT NULL DEFAULT 'normal',
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bundle_items (
        bundle_id TEXT NOT NULL,
        feed_id TEXT NOT NULL,
        item_id TEXT NOT NULL,
        title TEXT NOT NULL,
        url TEXT NOT NULL,
        publish_date TEXT,
        snippet TEXT,
        thumbnail TEXT,
        feed_title TEXT NOT NULL DEFAULT '',
        feed_type TEXT NOT NULL DEFAULT 'rss',
        relevance_score REAL NOT NULL,
        matched_terms TEXT NOT NULL DEFAULT '[]',
        inserted_at TEXT NOT NULL,
        PRIMARY KEY (bundle_id, feed_id, item_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_bundle_items_score ON bundle_items(bundle_id, relevance_score DESC, publish_date DESC)",
    """
    CREATE TABLE IF NOT EXISTS removed_stories (
        bundle_id TEXT NOT NULL,
        story_url TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        removed_at TEXT NOT NULL,
        PRIMARY KEY (bundle_id, story_url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS story_cache (
        bundle_id TEXT PRIMARY KEY,
        manifest TEXT NOT NULL,
        last_refreshed_at TEXT NOT NULL,
        last_accessed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS story_cache_chunks (
        bundle_id TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        payload TEXT NOT NULL,
        size_estimate INTEGER NOT NULL,
        PRIMARY KEY (bundle_id, chunk_index)
    )
    """,
)


class Database:
    def __init__(self, path: str):
        self.path = path

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self.path)
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    async def execute(self, query: str, params: tuple = ()) -> int:
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    async def fetchone(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def fetchall(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    async def execute_batch(self, operations: Iterable[Tuple[str, tuple]]) -> List[int]:
        """
        Apply all operations in one transaction. Either every operation is
        committed or none is.
        """
        operations = list(operations)
        if len(operations) > MAX_BATCH_OPS:
            raise ValueError(f"Batch of {len(operations)} operations exceeds limit of {MAX_BATCH_OPS}")

        rowcounts: List[int] = []
        async with self.connect() as conn:
            try:
                for query, params in operations:
                    cursor = await conn.execute(query, params)
                    rowcounts.append(cursor.rowcount)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return rowcounts

    async def init_tables(self) -> None:
        """Initialize all tables."""
        async with self.connect() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
            await conn.commit()
            logger.info("Database tables initialized")
