"""Hybrid feed ranker.

One ranking pass:

1. Build the user's context (preferences, recent engagement, following,
   trending topics, CF affinity, preference-list feedback).
2. Run the candidate generators concurrently, each under its own time
   budget; a generator that fails or times out contributes nothing.
3. De-duplicate (first seen wins) and cap the pool.
4. Score every candidate on six signals and sort (stable) by the weighted
   sum.
5. Cap items per author beyond the first ten, truncate, explain.

Results are cached for five minutes.  Any failure in the pass, or an empty
candidate pool, returns the chronological fallback feed instead.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import NonNegativeInt, TypeAdapter, ValidationError

from ...models import FeedbackRecord, FeedbackType, TrendingTopic, utcnow
from ..background import BackgroundTasks
from ..caching import config_hash, escape_glob, invalidate_patterns, read_cached, write_cached
from ..candidates import CandidateGenerator, default_generators
from ..errors import StoreError
from ..stores.base import (
    BackgroundQueue,
    Cache,
    ContentStore,
    InteractionStore,
    PostFilter,
    TrendingSource,
    TrendingWindow,
    UserStore,
)
from .context import AffinityLookup, ContextBuilder
from .experiments import EXPERIMENT_TTL, assign_variant, experiment_group, experiment_key
from .feedback import FeedbackRecorder
from .models import (
    DEFAULT_FEED_CONFIG,
    ContentCandidate,
    ExperimentResult,
    FeedConfiguration,
    RankedContent,
    UserContext,
    resolve_feed_config,
)
from .signals import compute_signals, explain

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

FEED_CACHE_TTL = 300                 # 5 minutes
DEFAULT_CANDIDATE_TIMEOUT = 0.3      # seconds, per generator and per context input

# The first results are never dropped by the per-author cap.
DIVERSITY_EXEMPT_COUNT = 10

FALLBACK_SIZE = 20
FALLBACK_SCORE_STEP = 0.05
FALLBACK_EXPLANATION = "Chronological fallback"

FEED_LOG_QUEUE = "feed_logs"
FEED_LOG_TOP_SCORES = 5

# Generators each algorithm runs; ``None`` means all of them.
ALGORITHM_GENERATORS: dict[str, set[str] | None] = {
    "hybrid": None,
    "following_only": {"following"},
    "trending": {"trending"},
}

_FEED = TypeAdapter(list[RankedContent])

# Typed feedback fields lifted out of caller metadata; malformed values are dropped.
_FEEDBACK_FIELDS: dict[str, TypeAdapter] = {
    "time_spent_ms": TypeAdapter(NonNegativeInt),
    "scroll_position": TypeAdapter(int),
    "feed_position": TypeAdapter(int),
}


def feedback_fields(meta: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for name, adapter in _FEEDBACK_FIELDS.items():
        value = meta.get(name)
        if value is None:
            continue
        try:
            fields[name] = adapter.validate_python(value)
        except ValidationError:
            logger.warning("Dropping malformed feedback field %s=%r", name, value)
    if meta.get("session_id") is not None:
        fields["session_id"] = str(meta["session_id"])
    return fields


def feed_key(user_id: str, config: FeedConfiguration) -> str:
    return f"feed:{user_id}:{config_hash(config)}"


def apply_author_diversity(ranked: list[RankedContent], config: FeedConfiguration) -> list[RankedContent]:
    """Greedy selection capping items per author once the exempt head is filled."""
    selected: list[RankedContent] = []
    per_author: dict[str, int] = {}
    for item in ranked:
        author = item.candidate.author_id
        count = per_author.get(author, 0)
        if count < config.max_items_per_author or len(selected) < DIVERSITY_EXEMPT_COUNT:
            selected.append(item)
            per_author[author] = count + 1
        if len(selected) >= config.final_feed_size:
            break
    return selected


class HybridFeedRanker:
    """Multi-source, multi-signal feed ranking for one deployment.

    All collaborators are injected; the ranker keeps no state between calls
    other than the background tasks it has spawned.
    """

    def __init__(
        self,
        content: ContentStore,
        interactions: InteractionStore,
        users: UserStore,
        cache: Cache,
        trending: TrendingSource,
        queue: BackgroundQueue,
        affinity: AffinityLookup | None = None,
        *,
        generators: list[CandidateGenerator] | None = None,
        config: FeedConfiguration | dict[str, Any] | None = None,
        candidate_timeout: float = DEFAULT_CANDIDATE_TIMEOUT,
        background: BackgroundTasks | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._content = content
        self._interactions = interactions
        self._cache = cache
        self._trending = trending
        self._queue = queue
        self._generators = generators if generators is not None else default_generators(clock)
        self._config = resolve_feed_config(config, base=DEFAULT_FEED_CONFIG)
        self._candidate_timeout = candidate_timeout
        self._background = background or BackgroundTasks()
        self._clock = clock
        self._feedback = FeedbackRecorder(interactions, cache, queue, clock=clock)
        self._contexts = ContextBuilder(
            content,
            interactions,
            users,
            cache,
            trending,
            self._feedback,
            affinity=affinity,
            clock=clock,
            timeout=candidate_timeout,
        )

    @property
    def config(self) -> FeedConfiguration:
        return self._config

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    # ------------------------------------------------------------------
    # Feed generation
    # ------------------------------------------------------------------

    async def generate_feed(
        self,
        user_id: str,
        config: FeedConfiguration | dict[str, Any] | None = None,
        device_type: str = "unknown",
    ) -> list[RankedContent]:
        """Ranked feed for *user_id*.

        Raises ``ValueError`` for an empty user id and
        :class:`~feedrank.lib.errors.ConfigurationError` for invalid
        overrides, both before any work starts.  Otherwise never raises.
        """
        if not user_id:
            raise ValueError("user_id must be non-empty")
        effective = resolve_feed_config(config, base=self._config)

        key = feed_key(user_id, effective)
        cached = await read_cached(self._cache, key, _FEED)
        if cached is not None:
            return cached

        try:
            if effective.algorithm == "chronological":
                feed = await self._chronological(effective)
            else:
                context = await self._contexts.build(user_id, device_type)
                candidates = await self.generate_candidates(context, effective)
                if not candidates:
                    logger.info("Empty candidate pool for user %s; serving fallback feed", user_id)
                    return await self.fallback_feed()
                feed = self._rank(candidates, context, effective)
        except Exception:
            logger.exception("Feed generation failed for user %s; serving fallback feed", user_id)
            return await self.fallback_feed()

        await write_cached(self._cache, key, feed, _FEED, FEED_CACHE_TTL)
        self._background.spawn(
            self._log_generation(user_id, feed, effective),
            name=f"feed-log:{user_id}",
        )
        return feed

    async def generate_candidates(
        self,
        context: UserContext,
        config: FeedConfiguration,
    ) -> list[ContentCandidate]:
        """Merged, de-duplicated candidate pool in generator order."""
        wanted = ALGORITHM_GENERATORS.get(config.algorithm)
        generators = [g for g in self._generators if wanted is None or g.name in wanted]

        results = await asyncio.gather(*(self._run_generator(g, context, config) for g in generators))

        pool: list[ContentCandidate] = []
        seen: set[str] = set()
        for candidates in results:
            for candidate in candidates:
                if candidate.id in seen:
                    continue
                seen.add(candidate.id)
                pool.append(candidate)
        return pool[: config.candidate_pool_size]

    async def _run_generator(
        self,
        generator: CandidateGenerator,
        context: UserContext,
        config: FeedConfiguration,
    ) -> list[ContentCandidate]:
        limit = min(generator.max_candidates, config.candidate_pool_size)
        try:
            result = await asyncio.wait_for(
                generator.generate(self._content, context, config, limit),
                timeout=self._candidate_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Candidate generator %s timed out after %.2fs", generator.name, self._candidate_timeout
            )
            return []
        except Exception:
            logger.warning("Candidate generator %s failed", generator.name, exc_info=True)
            return []
        return result.candidates[:limit]

    def _rank(
        self,
        candidates: list[ContentCandidate],
        context: UserContext,
        config: FeedConfiguration,
    ) -> list[RankedContent]:
        now = self._clock()
        scored = []
        for candidate in candidates:
            if candidate.engagement.total < config.min_engagement_threshold:
                continue
            signals = compute_signals(candidate, context, config, now)
            scored.append(
                RankedContent(
                    candidate=candidate,
                    signals=signals,
                    final_score=config.weights.score(signals),
                )
            )
        if not scored:
            logger.info("No candidates met the engagement threshold for user %s", context.user_id)

        # sorted() is stable: equal scores keep candidate-pool order.
        scored = sorted(scored, key=lambda item: -item.final_score)
        feed = apply_author_diversity(scored, config)
        for rank, item in enumerate(feed, start=1):
            item.rank = rank
            item.explanation = explain(item.signals)
        return feed

    async def _chronological(self, config: FeedConfiguration) -> list[RankedContent]:
        posts = await self._content.find_posts(
            PostFilter(
                since=self._clock() - timedelta(hours=config.freshness_window_hours),
                limit=config.final_feed_size,
            )
        )
        size = max(len(posts), 1)
        return [
            RankedContent(
                candidate=ContentCandidate.from_post(post, source="chronological"),
                final_score=1.0 - index / size,
                rank=index + 1,
            )
            for index, post in enumerate(posts)
        ]

    async def fallback_feed(self) -> list[RankedContent]:
        """The most recent posts, newest first; ``[]`` if even that fails."""
        try:
            posts = await self._content.find_posts(PostFilter(limit=FALLBACK_SIZE))
        except Exception:
            logger.exception("Fallback feed unavailable")
            return []
        return [
            RankedContent(
                candidate=ContentCandidate.from_post(post, source="fallback"),
                final_score=1.0 - index * FALLBACK_SCORE_STEP,
                rank=index + 1,
                explanation=[FALLBACK_EXPLANATION],
            )
            for index, post in enumerate(posts)
        ]

    async def _log_generation(self, user_id: str, feed: list[RankedContent], config: FeedConfiguration) -> None:
        await self._queue.enqueue(
            FEED_LOG_QUEUE,
            {
                "user_id": user_id,
                "feed_size": len(feed),
                "algorithm": config.algorithm,
                "config_hash": config_hash(config),
                "timestamp": self._clock().isoformat(),
                "top_scores": [item.final_score for item in feed[:FEED_LOG_TOP_SCORES]],
            },
        )

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def record_feedback(
        self,
        user_id: str,
        post_id: str,
        interaction_type: FeedbackType | str,
        metadata: dict[str, Any] | None = None,
    ) -> FeedbackRecord:
        """Persist feedback and update the user's preference list.

        Best-effort: store failures and malformed *metadata* fields are
        logged, not raised.  Only an unknown *interaction_type* raises
        (``ValueError``).
        """
        if not isinstance(interaction_type, FeedbackType):
            interaction_type = FeedbackType(str(interaction_type).lower())
        meta = dict(metadata or {})
        record = FeedbackRecord(
            id=f"feedback_{uuid.uuid4().hex}",
            user_id=user_id,
            post_id=post_id,
            interaction_type=interaction_type,
            metadata=meta,
            created_at=self._clock(),
            **feedback_fields(meta),
        )
        await self._feedback.record(record)
        await invalidate_patterns(self._cache, [f"feed:{escape_glob(user_id)}:*"])
        self._background.spawn(
            self._feedback.check_retraining(user_id),
            name=f"retraining-check:{user_id}",
        )
        return record

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    async def run_experiment(
        self,
        user_id: str,
        experiment_name: str,
        variants: dict[str, dict[str, Any]],
    ) -> ExperimentResult:
        """Serve the feed under the user's deterministically assigned variant."""
        variant = assign_variant(user_id, experiment_name, list(variants))
        effective = resolve_feed_config(variants[variant], base=self._config)
        feed = await self.generate_feed(user_id, effective)

        if not effective.experiment_enabled:
            return ExperimentResult(variant=variant, feed=feed)

        group = experiment_group(experiment_name, variant)
        tagged = [item.model_copy(update={"experiment_group": group}) for item in feed]
        try:
            await self._cache.hash_set(experiment_key(experiment_name), user_id, variant, EXPERIMENT_TTL)
        except StoreError:
            logger.warning(
                "Failed to record assignment of %s to %s/%s", user_id, experiment_name, variant, exc_info=True
            )
        return ExperimentResult(variant=variant, feed=tagged)

    # ------------------------------------------------------------------
    # Trending
    # ------------------------------------------------------------------

    async def get_trending_topics(self, limit: int = 10, window: TrendingWindow = "6h") -> list[TrendingTopic]:
        try:
            return await self._trending.get_trending_topics(limit, window)
        except Exception:
            logger.warning("Trending topics unavailable", exc_info=True)
            return []
