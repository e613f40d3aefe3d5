"""
Deterministic relevance heuristic for bundle matches
"""
import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from core.matching import MatchCandidate, significant_words

DESCRIPTION_MIN_LENGTH = 4
DEFAULT_LOW_SIGNAL_FEED_TYPE = "twitter"


def title_word_score(item_title: str, bundle_title: str) -> int:
    """
    +15 per bundle title word found as a whole word in the item title,
    +5 when it is only found as a substring.
    """
    score = 0
    title_lower = item_title.lower()
    for word in significant_words(bundle_title):
        if re.search(rf"\b{re.escape(word)}\b", item_title, re.IGNORECASE):
            score += 15
        elif word in title_lower:
            score += 5
    return score


def search_term_score(item_title: str, item_body: str, search_terms: Iterable[str]) -> int:
    score = 0
    title_lower = item_title.lower()
    body_lower = item_body.lower()
    for term in search_terms:
        term_lower = " ".join(term.lower().split())
        if not term_lower:
            continue
        if term_lower in title_lower:
            score += 25
        elif term_lower in body_lower:
            score += 15
        else:
            words = significant_words(term_lower)
            if len(words) > 1:
                if all(word in title_lower for word in words):
                    score += 20
                elif all(word in body_lower for word in words):
                    score += 10
    return score


def description_score(item_title: str, item_body: str, description: Optional[str]) -> int:
    if not description:
        return 0
    score = 0
    title_lower = item_title.lower()
    body_lower = item_body.lower()
    for word in significant_words(description, min_length=DESCRIPTION_MIN_LENGTH):
        if word in title_lower:
            score += 5
        if word in body_lower:
            score += 3
    return score


def relevance_score(
    item_title: str,
    item_body: str,
    bundle_title: str,
    bundle_description: Optional[str] = None,
    search_terms: Iterable[str] = (),
) -> int:
    """Text-only part of the score: title words, search terms, description keywords."""
    return (
        title_word_score(item_title, bundle_title)
        + search_term_score(item_title, item_body, search_terms)
        + description_score(item_title, item_body, bundle_description)
    )


def recency_boost(publish_date: Optional[datetime], now: datetime) -> int:
    if publish_date is None:
        return 0
    if publish_date.tzinfo is None:
        publish_date = publish_date.replace(tzinfo=timezone.utc)
    days = (now - publish_date).total_seconds() / 86400
    if days < 0:
        return 0
    if days < 1:
        return 5
    if days < 3:
        return 3
    if days < 7:
        return 1
    return 0


def variety_bonus(feed_type: str, low_signal_feed_type: str = DEFAULT_LOW_SIGNAL_FEED_TYPE) -> int:
    return 0 if feed_type == low_signal_feed_type else 3


def score_candidate(
    candidate: MatchCandidate,
    *,
    bundle_title: str,
    bundle_description: Optional[str],
    search_terms: Iterable[str],
    criteria_points: int,
    now: datetime,
    low_signal_feed_type: str = DEFAULT_LOW_SIGNAL_FEED_TYPE,
) -> float:
    """
    Full score of a candidate for one bundle.
    """
    score = criteria_points
    score += relevance_score(
        candidate.title,
        candidate.body,
        bundle_title,
        bundle_description,
        search_terms,
    )
    score += recency_boost(candidate.publish_date, now)
    score += variety_bonus(candidate.feed_type, low_signal_feed_type)
    return float(score)
