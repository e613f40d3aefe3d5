"""
Projection of ranked matches into cached stories, and packing of cached
stories into size-bounded chunks for the durable store.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from core.dates import utc_now
from core.entities import Bundle, BundleMatch
from core.schemas import CacheChunk, CacheManifest, CacheSummary, CachedStory, DateRange
from services.database import MAX_BATCH_OPS

logger = logging.getLogger(__name__)

MAX_STORIES_PER_CHUNK = 100
MAX_CHUNK_BYTES = 900 * 1024
# Room kept for the chunk fields around the story list
CHUNK_ENVELOPE_BYTES = 1024
# One delete and one manifest write share the batch with the chunks
MAX_CHUNKS = MAX_BATCH_OPS - 2

SOURCE_TYPES = {
    "youtube": "video",
    "twitter": "tweet",
}


def to_cached_story(match: BundleMatch, order: int) -> CachedStory:
    return CachedStory(
        id=match.item_id,
        url=match.url,
        title=match.title,
        description=match.snippet,
        thumbnail=match.thumbnail,
        source_type=SOURCE_TYPES.get(match.feed_type, "article"),
        source_name=match.feed_title,
        published_at=match.publish_date,
        relevance_score=match.relevance_score,
        order=order,
    )


def story_size(story: CachedStory) -> int:
    return len(story.model_dump_json().encode("utf-8"))


def pack_chunks(
    bundle_id: str,
    stories: List[CachedStory],
    *,
    max_items: int = MAX_STORIES_PER_CHUNK,
    max_bytes: int = MAX_CHUNK_BYTES,
    max_chunks: int = MAX_CHUNKS,
    now: Optional[datetime] = None,
) -> List[CacheChunk]:
    """
    Pack stories in order into chunks holding at most `max_items` stories
    and at most `max_bytes` serialized, whichever limit is hit first.
    """
    now = now or utc_now()
    budget = max_bytes - CHUNK_ENVELOPE_BYTES
    chunks: List[CacheChunk] = []
    current: List[CachedStory] = []
    current_size = 0

    def close_chunk() -> None:
        chunks.append(
            CacheChunk(
                bundle_id=bundle_id,
                chunk_index=len(chunks),
                stories=current,
                story_count=len(current),
                size_estimate=current_size,
                created_at=now,
            )
        )

    for story in stories:
        size = story_size(story) + 1
        if size > budget:
            logger.warning(f"Story {story.id} is too large to cache ({size} bytes), skipping")
            continue

        if current and (len(current) >= max_items or current_size + size > budget):
            close_chunk()
            current = []
            current_size = 0

        current.append(story)
        current_size += size

    if current:
        close_chunk()

    if len(chunks) > max_chunks:
        logger.warning(f"Cache for bundle {bundle_id} truncated to {max_chunks} chunks (of {len(chunks)})")
        chunks = chunks[:max_chunks]

    return chunks


def summarize(stories: List[CachedStory]) -> CacheSummary:
    by_type: Dict[str, int] = {}
    by_source: Dict[str, int] = {}
    dates = [story.published_at for story in stories if story.published_at]

    for story in stories:
        by_type[story.source_type] = by_type.get(story.source_type, 0) + 1
        by_source[story.source_name] = by_source.get(story.source_name, 0) + 1

    return CacheSummary(
        total_stories=len(stories),
        stories_by_type=by_type,
        stories_by_source=by_source,
        date_range=DateRange(
            earliest=min(dates) if dates else None,
            latest=max(dates) if dates else None,
        ),
    )


def build_manifest(
    bundle: Bundle,
    stories: List[CachedStory],
    chunk_count: int,
    *,
    now: datetime,
    max_age_hours: float,
) -> CacheManifest:
    return CacheManifest(
        bundle_id=bundle.id,
        bundle_title=bundle.title,
        last_refreshed_at=now,
        last_accessed_at=now,
        story_count=len(stories),
        chunk_count=chunk_count,
        search_terms=list(bundle.search_terms),
        feed_ids=list(bundle.feed_ids),
        max_age_hours=max_age_hours,
        status="active",
        summary=summarize(stories),
    )
