"""
Bundle matching engine: scores items against bundle criteria and keeps the
bundle match index up to date.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from core.dates import utc_now
from core.entities import Bundle, BundleMatch, StoryRecord
from core.matching import BundleCriteria, MatchCandidate, candidate_from_story
from core.scoring import DEFAULT_LOW_SIGNAL_FEED_TYPE, score_candidate
from services.activity_log import ActivityLog
from services.bundle_items import BundleMatchIndex
from services.removed_stories import TombstoneStore

logger = logging.getLogger(__name__)


def match_item_against_bundle(
    candidate: MatchCandidate,
    bundle: Bundle,
    *,
    now: datetime,
    low_signal_feed_type: str = DEFAULT_LOW_SIGNAL_FEED_TYPE,
) -> Optional[BundleMatch]:
    if not bundle.applies_to_feed(candidate.feed_id):
        return None

    criteria = BundleCriteria.from_bundle(bundle).evaluate(candidate.searchable_text)
    if not criteria.matched:
        return None

    score = score_candidate(
        candidate,
        bundle_title=bundle.title,
        bundle_description=bundle.description,
        search_terms=bundle.search_terms,
        criteria_points=criteria.points,
        now=now,
        low_signal_feed_type=low_signal_feed_type,
    )
    if score <= 0:
        return None

    return BundleMatch(
        bundle_id=bundle.id,
        feed_id=candidate.feed_id,
        item_id=candidate.item_id,
        matched_terms=list(criteria.matched_terms),
        relevance_score=score,
        title=candidate.title,
        url=candidate.url,
        publish_date=candidate.publish_date,
        feed_title=candidate.feed_title,
        feed_type=candidate.feed_type,
        snippet=candidate.body or None,
        thumbnail=candidate.thumbnail,
    )


def match_item_against_bundles(
    candidate: MatchCandidate,
    bundles: Iterable[Bundle],
    *,
    now: Optional[datetime] = None,
    low_signal_feed_type: str = DEFAULT_LOW_SIGNAL_FEED_TYPE,
) -> List[BundleMatch]:
    """
    Pure and deterministic for a fixed `now`: returns one match per bundle
    whose criteria hold with a positive score, in bundle order.
    """
    now = now or utc_now()
    matches = []
    for bundle in bundles:
        match = match_item_against_bundle(
            candidate, bundle, now=now, low_signal_feed_type=low_signal_feed_type
        )
        if match is not None:
            matches.append(match)
    return matches


class BundleMatchingEngine:
    def __init__(
        self,
        match_index: BundleMatchIndex,
        tombstones: TombstoneStore,
        activity_log: ActivityLog,
        low_signal_feed_type: str = DEFAULT_LOW_SIGNAL_FEED_TYPE,
    ):
        self.match_index = match_index
        self.tombstones = tombstones
        self.activity_log = activity_log
        self.low_signal_feed_type = low_signal_feed_type

    async def process_new_item(self, candidate: MatchCandidate, bundles: List[Bundle]) -> int:
        """
        Match a newly ingested item against every bundle and persist the
        surviving matches. Tombstoned pairs are skipped; a failing bundle does
        not affect the others.

        Returns:
            Number of matches written
        """
        now = utc_now()
        surviving: List[BundleMatch] = []

        for bundle in bundles:
            try:
                match = match_item_against_bundle(
                    candidate, bundle, now=now, low_signal_feed_type=self.low_signal_feed_type
                )
                if match is None:
                    continue
                if await self.tombstones.is_removed(candidate.url, bundle.id):
                    logger.debug(f"Skipping removed story '{candidate.title[:50]}' for bundle '{bundle.title}'")
                    continue
                surviving.append(match)
            except Exception as e:
                logger.exception(f"Matching failed for bundle {bundle.id}: {e}")
                self.activity_log.error(
                    f"Matching failed for bundle {bundle.title}: {e}", bundle_id=bundle.id
                )

        if not surviving:
            return 0

        try:
            written = await self.match_index.save_matches(surviving)
        except Exception as e:
            logger.exception(f"Failed to save matches for '{candidate.title[:50]}': {e}")
            self.activity_log.error(f"Failed to save bundle matches: {e}")
            return 0

        if written < len(surviving):
            logger.info(f"Skipped {len(surviving) - written} matches removed while saving '{candidate.title[:50]}'")
        logger.info(f"Added item '{candidate.title[:50]}' to {written} bundles")
        return written

    async def rematch_bundle(self, bundle: Bundle, stories: List[StoryRecord]) -> int:
        """
        Re-evaluate stored stories for a bundle whose criteria changed and
        replace its matches.
        """
        now = utc_now()
        removed = set(await self.tombstones.list_removed(bundle.id))
        matches = []
        for story in stories:
            if story.url in removed:
                continue
            match = match_item_against_bundle(
                candidate_from_story(story),
                bundle,
                now=now,
                low_signal_feed_type=self.low_signal_feed_type,
            )
            if match is not None:
                matches.append(match)

        written = await self.match_index.replace_bundle_items(bundle.id, matches)
        self.activity_log.info(
            f"Re-matched bundle {bundle.title}: {written} matches from {len(stories)} stories",
            bundle_id=bundle.id,
            bundle_title=bundle.title,
        )
        return written
