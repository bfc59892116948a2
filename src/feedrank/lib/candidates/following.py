"""Following candidate generator.

Recent posts by the authors the user follows, newest first, limited to the
feed's freshness window.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from ...models import utcnow
from ..ranking.models import ContentCandidate, FeedConfiguration, UserContext
from ..stores.base import ContentStore, PostFilter
from .base import CandidateGenerator, CandidateResult, freshness_cutoff

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 200


class FollowingCandidateGenerator(CandidateGenerator):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    @property
    def name(self) -> str:
        return "following"

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
        if not context.following:
            logger.info("User %s follows nobody; no following candidates", context.user_id)
            return self._result([])

        posts = await store.find_posts(
            PostFilter(
                author_ids=context.following,
                since=freshness_cutoff(config, self._clock()),
                limit=min(limit, MAX_CANDIDATES),
            )
        )
        return self._result([ContentCandidate.from_post(p, source=self.name) for p in posts])
