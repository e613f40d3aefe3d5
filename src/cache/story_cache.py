"""
MultiTierStoryCache - serves a bundle's ranked stories from memory, the local
store or the durable store, and rebuilds them from the match index plus an
ad-hoc search over recent stories on a miss.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from cache.chunking import build_manifest, pack_chunks, to_cached_story
from cache.single_flight import SingleFlight
from cache.tiers import Tier
from core.dates import utc_now
from core.entities import Bundle, BundleMatch
from core.errors import BundleNotFoundError
from core.matching import candidate_from_story
from core.schemas import CacheEntry, CacheManifest, CachedStory
from core.scoring import DEFAULT_LOW_SIGNAL_FEED_TYPE
from processing.matcher import match_item_against_bundle
from services.activity_log import ActivityLog
from services.bundle_items import BundleMatchIndex
from services.bundles import BundleRepository
from services.feed_stories import FeedStoryStore
from services.removed_stories import TombstoneStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_HOURS = 24 * 7


@dataclass
class CacheStats:
    hits: Dict[str, int] = field(default_factory=dict)
    misses: int = 0
    refills: int = 0
    stale_reads: int = 0


def merge_results(indexed: Sequence[BundleMatch], searched: Sequence[BundleMatch]) -> List[BundleMatch]:
    """De-duplicate by url; match index entries take precedence."""
    unique: Dict[str, BundleMatch] = {}
    for match in indexed:
        unique.setdefault(match.url or match.item_id, match)
    for match in searched:
        unique.setdefault(match.url or match.item_id, match)
    return list(unique.values())


def _rank_key(match: BundleMatch):
    published = match.publish_date.timestamp() if match.publish_date else float("-inf")
    return (-match.relevance_score, -published, match.item_id)


def rank(matches: Sequence[BundleMatch]) -> List[BundleMatch]:
    """Score descending, then newest first, then item id."""
    return sorted(matches, key=_rank_key)


class MultiTierStoryCache:
    def __init__(
        self,
        tiers: List[Tier],
        bundles: BundleRepository,
        match_index: BundleMatchIndex,
        stories: FeedStoryStore,
        tombstones: TombstoneStore,
        activity_log: ActivityLog,
        max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
        search_window_days: int = 30,
        search_limit: int = 1000,
        low_signal_feed_type: str = DEFAULT_LOW_SIGNAL_FEED_TYPE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.tiers = tiers
        self.bundles = bundles
        self.match_index = match_index
        self.stories = stories
        self.tombstones = tombstones
        self.activity_log = activity_log
        self.max_age_hours = max_age_hours
        self.search_window_days = search_window_days
        self.search_limit = search_limit
        self.low_signal_feed_type = low_signal_feed_type
        self.clock = clock
        self.single_flight = SingleFlight()
        self.refills = SingleFlight()
        # bumped by clear_cache and by every refill that reaches the tiers
        self._generations: Dict[str, int] = {}
        self.stats = CacheStats()

    async def get_stories(self, bundle_id: str, force_refresh: bool = False) -> List[CachedStory]:
        """
        Stories for a bundle, best first. A stale cache is still returned
        (with a warning); pass force_refresh=True to rebuild it.
        Never raises: failures are reported to the activity log.

        Concurrent reads of the same bundle share one load, and at most one
        refill per bundle runs at a time. A forced refresh lets an in-flight
        read finish, then starts or joins a refill.
        """
        try:
            if force_refresh:
                await self.single_flight.wait(bundle_id)
                entry = await self._refill_once(bundle_id)
            else:
                entry = await self.single_flight.do(bundle_id, lambda: self._load(bundle_id))
            return await self._without_removed(bundle_id, entry.stories)
        except BundleNotFoundError as e:
            logger.warning(str(e))
            self.activity_log.warning(str(e), bundle_id=bundle_id)
            return []
        except Exception as e:
            logger.exception(f"Error getting stories for bundle {bundle_id}: {e}")
            self.activity_log.error(f"Failed to get stories for bundle {bundle_id}: {e}", bundle_id=bundle_id)
            return []

    async def refresh_from_index(self, bundle_id: str) -> List[CachedStory]:
        await self.clear_cache(bundle_id)
        return await self.get_stories(bundle_id, force_refresh=True)

    async def clear_cache(self, bundle_id: str) -> None:
        """
        Drop the bundle from every tier. Call whenever its criteria change.
        A refill still running for the bundle will not write its result.
        """
        self._advance(bundle_id)
        self.single_flight.forget(bundle_id)
        self.refills.forget(bundle_id)
        for tier in self.tiers:
            try:
                await tier.clear(bundle_id)
            except Exception as e:
                logger.error(f"Failed to clear {tier.name} cache for bundle {bundle_id}: {e}")
                self.activity_log.error(f"Failed to clear {tier.name} cache: {e}", bundle_id=bundle_id)
        self.activity_log.info(f"Cleared cache for bundle {bundle_id}", bundle_id=bundle_id)

    async def get_manifest(self, bundle_id: str) -> Optional[CacheManifest]:
        for tier in self.tiers:
            try:
                manifest = await tier.manifest(bundle_id)
            except Exception as e:
                logger.warning(f"Could not read {tier.name} manifest for bundle {bundle_id}: {e}")
                continue
            if manifest is not None:
                return manifest
        return None

    async def is_cache_fresh(self, bundle_id: str, max_age_hours: Optional[float] = None) -> bool:
        manifest = await self.get_manifest(bundle_id)
        if manifest is None:
            return False
        return manifest.is_fresh(self.clock(), max_age_hours)

    def _generation(self, bundle_id: str) -> int:
        return self._generations.get(bundle_id, 0)

    def _advance(self, bundle_id: str) -> None:
        self._generations[bundle_id] = self._generation(bundle_id) + 1

    async def _load(self, bundle_id: str) -> CacheEntry:
        if not self.refills.in_flight(bundle_id):
            entry = await self._read_through(bundle_id)
            if entry is not None:
                self._warn_if_stale(entry.manifest)
                return entry
        return await self._refill_once(bundle_id)

    async def _refill_once(self, bundle_id: str) -> CacheEntry:
        return await self.refills.do(bundle_id, lambda: self._refill(bundle_id))

    async def _read_through(self, bundle_id: str) -> Optional[CacheEntry]:
        generation = self._generation(bundle_id)
        for index, tier in enumerate(self.tiers):
            try:
                entry = await tier.get(bundle_id)
            except Exception as e:
                logger.warning(f"{tier.name} cache read failed for bundle {bundle_id}: {e}")
                self.activity_log.warning(f"Failed to load {tier.name} cache: {e}", bundle_id=bundle_id)
                continue

            if entry is None:
                continue

            self.stats.hits[tier.name] = self.stats.hits.get(tier.name, 0) + 1
            logger.debug(f"Found cached stories in {tier.name} tier for bundle {bundle_id}")
            await self._write_tiers(self.tiers[:index], entry, generation)
            return entry

        self.stats.misses += 1
        return None

    async def _write_tiers(self, tiers: Sequence[Tier], entry: CacheEntry, generation: int) -> bool:
        """
        Write the entry to each tier while the bundle's generation is still
        `generation`. Returns False once it has moved on.
        """
        bundle_id = entry.manifest.bundle_id
        for tier in tiers:
            if self._generation(bundle_id) != generation:
                return False
            try:
                await tier.put(entry)
            except Exception as e:
                logger.error(f"Failed to save {tier.name} cache for bundle {bundle_id}: {e}")
                self.activity_log.error(f"Failed to save {tier.name} cache: {e}", bundle_id=bundle_id)
        return True

    def _warn_if_stale(self, manifest: CacheManifest) -> None:
        now = self.clock()
        if manifest.is_fresh(now):
            return
        self.stats.stale_reads += 1
        age = manifest.age_hours(now)
        logger.warning(f"Cache for bundle {manifest.bundle_id} is stale ({age:.1f} hours old)")
        self.activity_log.warning(
            f"Using stale cache for bundle {manifest.bundle_id} ({age:.1f} hours old)",
            bundle_id=manifest.bundle_id,
        )

    async def _without_removed(self, bundle_id: str, stories: List[CachedStory]) -> List[CachedStory]:
        try:
            removed = set(await self.tombstones.list_removed(bundle_id))
        except Exception as e:
            logger.error(f"Error filtering removed stories from cache: {e}")
            return list(stories)
        if not removed:
            return list(stories)
        kept = [story for story in stories if story.url not in removed]
        logger.info(f"Filtered {len(stories) - len(kept)} removed stories from cached results")
        return kept

    async def _search_recent(self, bundle: Bundle) -> List[BundleMatch]:
        try:
            recent = await self.stories.get_recent_stories(days=self.search_window_days, limit=self.search_limit)
        except Exception as e:
            logger.error(f"Error searching stories for bundle {bundle.id}: {e}")
            return []

        now = self.clock()
        results = []
        for story in recent:
            match = match_item_against_bundle(
                candidate_from_story(story),
                bundle,
                now=now,
                low_signal_feed_type=self.low_signal_feed_type,
            )
            if match is not None:
                results.append(match)
        logger.info(f"Processed {len(recent)} recent stories, found {len(results)} matches for {bundle.title}")
        return results

    async def _refill(self, bundle_id: str) -> CacheEntry:
        generation = self._generation(bundle_id)
        bundle = await self.bundles.get_bundle(bundle_id)
        if bundle is None:
            raise BundleNotFoundError(bundle_id)

        self.activity_log.start_bundle_search(bundle.title, bundle.id)

        indexed = await self.match_index.get_bundle_items(bundle_id)
        searched = await self._search_recent(bundle)
        ranked = rank(merge_results(indexed, searched))

        removed = set(await self.tombstones.list_removed(bundle_id))
        kept = [match for match in ranked if match.url not in removed]

        now = self.clock()
        projections = [to_cached_story(match, order) for order, match in enumerate(kept)]
        chunks = pack_chunks(bundle_id, projections, now=now)
        stories = [story for chunk in chunks for story in chunk.stories]

        entry = CacheEntry(
            manifest=build_manifest(
                bundle, stories, len(chunks), now=now, max_age_hours=self.max_age_hours
            ),
            stories=stories,
        )
        self.stats.refills += 1
        if await self._write_tiers(self.tiers, entry, generation):
            self._advance(bundle_id)
        else:
            logger.info(f"Cache for bundle {bundle_id} was cleared during refill; result not cached")

        logger.info(
            f"Total unique stories for bundle '{bundle.title}': {len(stories)} "
            f"({len(indexed)} pre-matched, {len(searched)} from search, {len(ranked) - len(kept)} removed)"
        )
        self.activity_log.complete_bundle_search(bundle.title, bundle.id, len(stories))
        return entry
