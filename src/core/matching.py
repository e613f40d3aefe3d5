"""
Lexical matching of feed items against bundle criteria.

A bundle title and each of its search terms are turned into a PhraseRule.
The word count of the phrase decides how strict the rule is:

- one significant word: substring match
- two significant words: the exact phrase, or any single word (personal names)
- more than two: the exact phrase, or all words present

A bundle matches an item when its title rule or any term rule fires.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from core.entities import Bundle, StoryRecord

MIN_WORD_LENGTH = 3
ANY_WORD_MAX = 2


def normalize(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def significant_words(phrase: Optional[str], min_length: int = MIN_WORD_LENGTH) -> List[str]:
    """Lower-cased whitespace tokens of at least `min_length` characters."""
    return [word for word in normalize(phrase).split(" ") if len(word) >= min_length]


@dataclass(frozen=True)
class MatchCandidate:
    """
    The text and display fields of an item, as seen by the matcher.
    """
    item_id: str
    feed_id: str
    title: str
    url: str
    feed_title: str = ""
    feed_type: str = "rss"
    snippet: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    author: Optional[str] = None
    categories: Tuple[str, ...] = ()
    publish_date: Optional[datetime] = None
    thumbnail: Optional[str] = None

    @property
    def body(self) -> str:
        return self.snippet or self.description or ""

    @property
    def searchable_text(self) -> str:
        parts = [
            self.title,
            self.snippet or "",
            self.description or "",
            self.content or "",
            self.url,
            self.author or "",
            *self.categories,
        ]
        return normalize(" ".join(parts))


def candidate_from_story(story: StoryRecord) -> MatchCandidate:
    return MatchCandidate(
        item_id=story.id,
        feed_id=story.feed_id,
        feed_title=story.feed_title,
        feed_type=story.feed_type,
        title=story.title,
        url=story.url,
        snippet=story.snippet,
        description=story.description,
        categories=tuple(story.categories),
        publish_date=story.publish_date,
        thumbnail=story.thumbnail,
    )


@dataclass(frozen=True)
class RuleWeights:
    """Points awarded when a rule fires, by the way it fired."""
    phrase: int
    single: int
    per_word: int
    all_words: int


TITLE_WEIGHTS = RuleWeights(phrase=30, single=20, per_word=15, all_words=20)
TERM_WEIGHTS = RuleWeights(phrase=25, single=15, per_word=10, all_words=15)


@dataclass(frozen=True)
class RuleResult:
    matched: bool
    hits: Tuple[str, ...] = ()
    points: int = 0


NO_MATCH = RuleResult(matched=False)


@dataclass(frozen=True)
class PhraseRule:
    label: str
    phrase: str
    words: Tuple[str, ...]
    weights: RuleWeights

    @classmethod
    def from_phrase(cls, phrase: str, weights: RuleWeights) -> "PhraseRule":
        return cls(
            label=phrase.strip(),
            phrase=normalize(phrase),
            words=tuple(significant_words(phrase)),
            weights=weights,
        )

    @property
    def mode(self) -> str:
        if not self.words:
            return "empty"
        if len(self.words) == 1:
            return "single"
        if len(self.words) <= ANY_WORD_MAX:
            return "any"
        return "all"

    def evaluate(self, text: str) -> RuleResult:
        mode = self.mode
        if mode == "empty":
            return NO_MATCH

        if mode == "single":
            if self.words[0] in text:
                return RuleResult(True, (self.label,), self.weights.single)
            return NO_MATCH

        if self.phrase in text:
            return RuleResult(True, (self.label,), self.weights.phrase)

        if mode == "any":
            hits = tuple(word for word in self.words if word in text)
            if hits:
                return RuleResult(True, hits, self.weights.per_word * len(hits))
            return NO_MATCH

        if all(word in text for word in self.words):
            return RuleResult(True, (self.label,), self.weights.all_words)
        return NO_MATCH


@dataclass(frozen=True)
class CriteriaResult:
    matched: bool
    matched_terms: List[str] = field(default_factory=list)
    points: int = 0


@dataclass(frozen=True)
class BundleCriteria:
    title_rule: PhraseRule
    term_rules: Tuple[PhraseRule, ...]

    @classmethod
    def from_bundle(cls, bundle: Bundle) -> "BundleCriteria":
        return cls(
            title_rule=PhraseRule.from_phrase(bundle.title, TITLE_WEIGHTS),
            term_rules=tuple(
                PhraseRule.from_phrase(term, TERM_WEIGHTS)
                for term in bundle.search_terms
                if term and term.strip()
            ),
        )

    def rules(self) -> Iterable[PhraseRule]:
        yield self.title_rule
        yield from self.term_rules

    def evaluate(self, text: str) -> CriteriaResult:
        matched_terms: List[str] = []
        points = 0
        for rule in self.rules():
            result = rule.evaluate(text)
            if not result.matched:
                continue
            points += result.points
            for hit in result.hits:
                if hit not in matched_terms:
                    matched_terms.append(hit)
        return CriteriaResult(bool(matched_terms), matched_terms, points)
