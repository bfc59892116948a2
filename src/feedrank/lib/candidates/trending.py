"""Trending candidate generator.

Posts from the last six hours that mention one of the top trending topics,
ranked by the velocity of the strongest topic they match.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from ...models import TrendingTopic, utcnow
from ..ranking.models import ContentCandidate, FeedConfiguration, UserContext
from ..stores.base import ContentStore, PostFilter
from ..text import keywords, topic_matches
from .base import CandidateGenerator, CandidateResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

MAX_CANDIDATES = 100
TRENDING_WINDOW = timedelta(hours=6)
TOP_TOPICS = 10
OVERFETCH_FACTOR = 2


def matched_velocity(tokens: set[str], topics: list[TrendingTopic]) -> float:
    """Velocity of the fastest topic whose keywords all appear in *tokens*; 0 if none."""
    best = 0.0
    for topic in topics:
        if topic.velocity > best and topic_matches(topic.topic, tokens):
            best = topic.velocity
    return best


def candidate_tokens(content: str, tags: list[str]) -> set[str]:
    return keywords(content) | {t.lower().lstrip("#") for t in tags}


class TrendingCandidateGenerator(CandidateGenerator):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    @property
    def name(self) -> str:
        return "trending"

    @property
    def max_candidates(self) -> int:
        return MAX_CANDIDATES

    async def generate(
        self,
        store: ContentStore,
        context: UserContext,
        config: FeedConfiguration,
        limit: int,
    ) -> CandidateResult:
        topics = context.trending_topics[:TOP_TOPICS]
        terms = sorted({kw for t in topics for kw in keywords(t.topic)})
        if not terms:
            logger.info("No trending topics; skipping trending candidates")
            return self._result([])

        limit = min(limit, MAX_CANDIDATES)
        posts = await store.find_posts(
            PostFilter(
                text_terms=terms,
                since=self._clock() - TRENDING_WINDOW,
                limit=limit * OVERFETCH_FACTOR,
            )
        )

        scored = []
        for post in posts:
            velocity = matched_velocity(candidate_tokens(post.content, post.tags), topics)
            if velocity > 0:
                scored.append((velocity, post))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return self._result(
            [ContentCandidate.from_post(p, source=self.name) for _, p in scored[:limit]]
        )
