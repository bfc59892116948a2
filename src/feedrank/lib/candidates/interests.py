"""Interest-based candidate generator.

Retrieves posts near the user's interest vector (an embedding derived from
what they engaged with recently) and re-ranks them by exact cosine
similarity.  Posts without an embedding, or pointing away from the user's
interests, are dropped.

Users without an interest vector get no candidates from this source; the
other generators cover them.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from ...models import utcnow
from ..ranking.models import ContentCandidate, FeedConfiguration, UserContext
from ..stores.base import ContentStore, PostFilter
from ..vectors import cosine_similarity
from .base import CandidateGenerator, CandidateResult, freshness_cutoff

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

MAX_CANDIDATES = 150

# Over-fetch from the vector index so the similarity cut still leaves enough.
OVERFETCH_FACTOR = 2

# Candidates at or below this cosine similarity are not "interests".
MIN_SIMILARITY = 0.0


class InterestCandidateGenerator(CandidateGenerator):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    @property
    def name(self) -> str:
        return "interests"

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
        interest = context.interest_vector
        if not interest:
            logger.info("No interest vector for user %s; skipping interest candidates", context.user_id)
            return self._result([])

        limit = min(limit, MAX_CANDIDATES)
        posts = await store.find_posts(
            PostFilter(
                near_vector=interest,
                since=freshness_cutoff(config, self._clock()),
                limit=limit * OVERFETCH_FACTOR,
            )
        )

        scored = []
        for post in posts:
            if post.author_id == context.user_id:
                continue
            sim = cosine_similarity(post.content_embedding, interest)
            if sim > MIN_SIMILARITY:
                scored.append((sim, post))

        # Stable: equal similarity keeps retrieval order.
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return self._result(
            [ContentCandidate.from_post(p, source=self.name) for _, p in scored[:limit]]
        )
