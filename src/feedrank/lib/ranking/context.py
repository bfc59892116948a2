"""Builds the per-request :class:`UserContext`.

Each input (preferences, recent engagement, following list, trending topics,
CF affinity, preference-list feedback) is loaded independently under a time
budget and degrades to an empty value on failure or timeout, so a partial
outage yields a thinner context rather than a failed or stalled request.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from pydantic import TypeAdapter

from ...models import Interaction, Post, utcnow
from ..caching import read_cached, write_cached
from ..collaborative.ratings import rating_for
from ..stores.base import (
    Cache,
    ContentStore,
    InteractionFilter,
    InteractionStore,
    PostFilter,
    TrendingSource,
    UserStore,
)
from ..vectors import weighted_average_vectors
from .feedback import FeedbackRecorder
from .models import ContentCandidate, EngagementEvent, SessionSignals, UserContext
from .signals import candidate_topics

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

ENGAGEMENT_LOOKBACK = timedelta(days=7)
MAX_RECENT_ENGAGEMENTS = 100

INTEREST_VECTOR_TTL = 3600           # 1 hour
INTEREST_PREFERENCE_KEY = "interest_embedding"

TRENDING_TOPIC_LIMIT = 20
TRENDING_TOPIC_WINDOW = "6h"

DEFAULT_CONTEXT_TIMEOUT = 0.3        # seconds, per input

AffinityLookup = Callable[[str], Awaitable[dict[str, float]]]

_VECTOR = TypeAdapter(list[float])


def interest_key(user_id: str) -> str:
    return f"interest_vector:{user_id}"


def derive_interest_vector(events: list[EngagementEvent], posts: dict[str, Post]) -> list[float] | None:
    """Rating-weighted mean of the embeddings of engaged posts.

    Embeddings whose dimension differs from the first one seen are ignored.
    """
    vectors: list[list[float]] = []
    weights: list[float] = []
    for event in events:
        post = posts.get(event.post_id)
        if post is None or not post.content_embedding:
            continue
        if vectors and len(post.content_embedding) != len(vectors[0]):
            continue
        vectors.append(post.content_embedding)
        weights.append(event.rating)
    if not vectors:
        return None
    return weighted_average_vectors(vectors, weights)


def preference_vector(preferences: dict) -> list[float] | None:
    raw = preferences.get(INTEREST_PREFERENCE_KEY)
    if not isinstance(raw, list) or not raw:
        return None
    try:
        return [float(x) for x in raw]
    except (TypeError, ValueError):
        return None


def topic_histogram(events: list[EngagementEvent], posts: dict[str, Post]) -> dict[str, int]:
    counts: Counter[str] = Counter()
    for event in events:
        post = posts.get(event.post_id)
        if post is not None:
            counts.update(candidate_topics(ContentCandidate.from_post(post)))
    return dict(counts)


class ContextBuilder:
    def __init__(
        self,
        content: ContentStore,
        interactions: InteractionStore,
        users: UserStore,
        cache: Cache,
        trending: TrendingSource,
        feedback: FeedbackRecorder,
        affinity: AffinityLookup | None = None,
        clock: Callable[[], datetime] = utcnow,
        timeout: float = DEFAULT_CONTEXT_TIMEOUT,
    ):
        self._content = content
        self._interactions = interactions
        self._users = users
        self._cache = cache
        self._trending = trending
        self._feedback = feedback
        self._affinity = affinity
        self._clock = clock
        self._timeout = timeout

    async def build(self, user_id: str, device_type: str = "unknown") -> UserContext:
        now = self._clock()
        preferences, interactions, following, trending, affinity, feedback = await asyncio.gather(
            self._guard("preferences", self._users.get_preferences(user_id), {}),
            self._guard("recent engagements", self._recent_interactions(user_id, now), []),
            self._guard("following list", self._users.find_following(user_id), []),
            self._guard(
                "trending topics",
                self._trending.get_trending_topics(TRENDING_TOPIC_LIMIT, TRENDING_TOPIC_WINDOW),
                [],
            ),
            self._guard("affinity", self._affinity(user_id), {}) if self._affinity else _const({}),
            self._guard("feedback signal", self._feedback.load_signal(user_id), 0.0),
        )

        events = [
            EngagementEvent(
                post_id=i.target_id,
                interaction_type=i.interaction_type,
                rating=rating_for(i),
                created_at=i.created_at,
            )
            for i in interactions
        ]
        posts = await self._guard("engaged posts", self._engaged_posts(events), {})
        interest = await self._interest_vector(user_id, events, posts, preferences)

        return UserContext(
            user_id=user_id,
            preferences=preferences,
            following=following,
            recent_engagements=events,
            interest_vector=interest,
            recent_topics=topic_histogram(events, posts),
            affinity=affinity,
            feedback_signal=feedback,
            trending_topics=trending,
            session=SessionSignals(
                device_type=device_type if device_type in ("mobile", "desktop", "tablet") else "unknown",
                hour_of_day=now.hour,
                is_weekend=now.weekday() >= 5,
            ),
        )

    async def _recent_interactions(self, user_id: str, now: datetime) -> list[Interaction]:
        return await self._interactions.find_interactions(
            InteractionFilter(
                user_id=user_id,
                since=now - ENGAGEMENT_LOOKBACK,
                limit=MAX_RECENT_ENGAGEMENTS,
            )
        )

    async def _engaged_posts(self, events: list[EngagementEvent]) -> dict[str, Post]:
        ids = list(dict.fromkeys(e.post_id for e in events))
        if not ids:
            return {}
        posts = await self._content.find_posts(PostFilter(ids=ids, limit=len(ids)))
        return {p.id: p for p in posts}

    async def _interest_vector(
        self,
        user_id: str,
        events: list[EngagementEvent],
        posts: dict[str, Post],
        preferences: dict,
    ) -> list[float] | None:
        key = interest_key(user_id)
        cached = await read_cached(self._cache, key, _VECTOR)
        if cached:
            return cached
        vector = derive_interest_vector(events, posts) or preference_vector(preferences)
        if vector:
            await write_cached(self._cache, key, vector, _VECTOR, INTEREST_VECTOR_TTL)
        return vector

    async def _guard(self, what: str, aw: Awaitable, default):
        try:
            return await asyncio.wait_for(aw, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Loading %s timed out after %.2fs; continuing without", what, self._timeout)
            return default
        except Exception:
            logger.warning("Could not load %s; continuing without", what, exc_info=True)
            return default


async def _const(value):
    return value
