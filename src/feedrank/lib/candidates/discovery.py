"""Discovery candidate generator.

Pure exploration: recent posts by authors the user neither follows nor is.
"""

from collections.abc import Callable
from datetime import datetime

from ...models import utcnow
from ..ranking.models import ContentCandidate, FeedConfiguration, UserContext
from ..stores.base import ContentStore, PostFilter
from .base import CandidateGenerator, CandidateResult, freshness_cutoff

MAX_CANDIDATES = 50


class DiscoveryCandidateGenerator(CandidateGenerator):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    @property
    def name(self) -> str:
        return "discovery"

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
        excluded = [*context.following, context.user_id]
        posts = await store.find_posts(
            PostFilter(
                exclude_author_ids=excluded,
                since=freshness_cutoff(config, self._clock()),
                limit=min(limit, MAX_CANDIDATES),
            )
        )
        # Stores may ignore exclusions they cannot express; enforce them here.
        excluded_set = set(excluded)
        return self._result(
            [
                ContentCandidate.from_post(p, source=self.name)
                for p in posts
                if p.author_id not in excluded_set
            ]
        )
