"""Collaborative-filtering recommendation engine.

Produces ranked item recommendations from sparse interaction histories:

* **user-based** – items liked by the user's nearest neighbours, weighted by
  neighbour similarity × rating × confidence.
* **item-based** – items similar to what the user already rated, weighted by
  item similarity × the user's rating × confidence.
* **blended** – a fixed 60/40 linear blend of the two above.
* **hybrid** – 40/40/20 of user-based, item-based and blended, recording how
  many methods agreed on each item.

Users with fewer than ``MIN_INTERACTIONS`` rated items get cold-start
results instead.  Every expensive step (profiles, pairwise similarities,
neighbourhoods, final lists) is cached with a TTL, and any failure while
scoring degrades to cold start rather than propagating.
"""

import asyncio
import logging
import random
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import TypeAdapter

from ...models import InteractionType, Interaction, Post, utcnow
from ..background import BackgroundTasks
from ..caching import config_hash, escape_glob, invalidate_patterns, read_cached, write_cached
from ..singleflight import SingleFlight
from ..stores.base import BackgroundQueue, Cache, ContentStore, InteractionFilter, InteractionStore, PostFilter
from ..vectors import clamp01, cosine_similarity, sparse_cosine_similarity
from .models import (
    CFConfiguration,
    ColdStartStrategy,
    ItemProfile,
    ItemSimilarity,
    RecommendationExplanation,
    RecommendationMetadata,
    RecommendationMethod,
    RecommendationResult,
    SimilarEntity,
    UserProfile,
    UserSimilarity,
    resolve_cf_config,
)
from .ratings import interaction_to_rating, parse_interaction_type, ratings_by

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

RECOMMENDATION_CACHE_TTL = 3600      # 1 hour
PROFILE_CACHE_TTL = 3600
SIMILARITY_CACHE_TTL = 86400         # 24 hours

# Below this many rated items a user (or raters, for an item) is cold.
MIN_INTERACTIONS = 5
MAX_PROFILE_INTERACTIONS = 500

# Bound on pairwise similarity computations per neighbourhood lookup.
MAX_NEIGHBOUR_CANDIDATES = 200
SIMILARITY_CONCURRENCY = 20

NEIGHBOURHOOD_SIZE = 50
SIMILAR_ITEMS_PER_SEED = 20
MAX_SEED_ITEMS = 50

# Shared-overlap count at which confidence saturates at 1.
CONFIDENCE_SATURATION = 20
SUPPORT_SATURATION = 5

RATING_SIMILARITY_WEIGHT = 0.7
CONTENT_SIMILARITY_WEIGHT = 0.3

BLEND_WEIGHTS = {RecommendationMethod.USER_BASED: 0.6, RecommendationMethod.ITEM_BASED: 0.4}
HYBRID_WEIGHTS = {
    RecommendationMethod.USER_BASED: 0.4,
    RecommendationMethod.ITEM_BASED: 0.4,
    RecommendationMethod.BLENDED: 0.2,
}
METHOD_COVERAGE = {
    RecommendationMethod.USER_BASED: 0.7,
    RecommendationMethod.ITEM_BASED: 0.8,
    RecommendationMethod.BLENDED: 0.75,
    RecommendationMethod.HYBRID: 0.9,
}

# The first results are never dropped by the category cap.
DIVERSITY_EXEMPT_COUNT = 10

COLD_START_CONFIDENCE = 0.3
COLD_START_METADATA = RecommendationMetadata(novelty=0.8, serendipity=0.5, coverage=0.6)
POPULAR_WINDOW = timedelta(hours=24)
POPULAR_POOL_FACTOR = 4

UPDATE_QUEUE = "cf_updates"

BLENDED_ALIASES = {"ncf": RecommendationMethod.BLENDED.value}

_RESULTS = TypeAdapter(list[RecommendationResult])
_USER_SIMS = TypeAdapter(list[UserSimilarity])
_ITEM_SIMS = TypeAdapter(list[ItemSimilarity])
_USER_SIM = TypeAdapter(UserSimilarity)
_ITEM_SIM = TypeAdapter(ItemSimilarity)
_USER_PROFILE = TypeAdapter(UserProfile)
_ITEM_PROFILE = TypeAdapter(ItemProfile)


def _pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def _ranked(results: list[RecommendationResult]) -> list[RecommendationResult]:
    # Item id breaks ties so identical inputs always give identical order.
    return sorted(results, key=lambda r: (-r.score, r.item_id))


def _novelty(supporters: int, population: int) -> float:
    """Share of the relevant population that did *not* surface the item."""
    if population <= 0:
        return 1.0
    return clamp01(1.0 - supporters / population)


def _serendipity(novelty: float, score: float, max_score: float) -> float:
    """Unexpected (novel) and relevant (high relative score) at once."""
    if max_score <= 0:
        return 0.0
    return clamp01(novelty * score / max_score)


def _category_of(post: Post | None, item_id: str) -> str:
    if post is None:
        return f"item:{item_id}"
    if post.tags:
        return f"tag:{post.tags[0].lower()}"
    return f"author:{post.author_id}"


def apply_category_diversity(
    recommendations: list[RecommendationResult],
    categories: Mapping[str, str],
    config: CFConfiguration,
) -> list[RecommendationResult]:
    """Cap results per coarse category once the exempt head is filled."""
    filtered: list[RecommendationResult] = []
    counts: dict[str, int] = {}
    for rec in recommendations:
        category = categories.get(rec.item_id, f"item:{rec.item_id}")
        count = counts.get(category, 0)
        if count < config.max_per_category or len(filtered) < DIVERSITY_EXEMPT_COUNT:
            filtered.append(rec)
            counts[category] = count + 1
        if len(filtered) >= config.max_recommendations:
            break
    return filtered


class CollaborativeFilteringEngine:
    """User/item collaborative filtering over an interaction store.

    Construct one per configuration; instances hold no shared mutable state
    beyond in-flight de-duplication, everything else lives in *cache*.
    """

    def __init__(
        self,
        interactions: InteractionStore,
        content: ContentStore,
        cache: Cache,
        queue: BackgroundQueue,
        config: CFConfiguration | dict[str, Any] | None = None,
        *,
        background: BackgroundTasks | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._interactions = interactions
        self._content = content
        self._cache = cache
        self._queue = queue
        self._config = resolve_cf_config(config)
        self._background = background or BackgroundTasks()
        self._rng = rng or random.Random()
        self._clock = clock
        self._flights: SingleFlight = SingleFlight()

    @property
    def config(self) -> CFConfiguration:
        return self._config

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    async def generate_recommendations(
        self,
        user_id: str,
        exclude_items: Iterable[str] = (),
        config: CFConfiguration | dict[str, Any] | None = None,
    ) -> list[RecommendationResult]:
        """Ranked recommendations for *user_id*; never raises for store failures.

        Raises ``ValueError`` for an empty user id and
        :class:`~feedrank.lib.errors.ConfigurationError` for invalid overrides.
        """
        if not user_id:
            raise ValueError("user_id must be non-empty")
        effective = resolve_cf_config(config, base=self._config)
        excluded = set(exclude_items)

        cache_key = "cf_recs:{}:{}".format(
            user_id, config_hash({"config": effective.model_dump(mode="json"), "exclude": sorted(excluded)})
        )
        cached = await read_cached(self._cache, cache_key, _RESULTS)
        if cached is not None:
            return [r for r in cached if r.item_id not in excluded]

        try:
            profile = await self.get_user_profile(user_id)
            if len(profile.interactions) < MIN_INTERACTIONS:
                logger.info(
                    "User %s has %d rated items; using cold start",
                    user_id,
                    len(profile.interactions),
                )
                return await self.handle_cold_start(user_id, effective, excluded)

            recommendations = await self._recommend(profile, effective)
            recommendations = [r for r in recommendations if r.item_id not in excluded]
            if not recommendations:
                logger.info("No neighbourhood signal for user %s; using cold start", user_id)
                return await self.handle_cold_start(user_id, effective, excluded)
            categories = await self._categories([r.item_id for r in recommendations])
            recommendations = apply_category_diversity(recommendations, categories, effective)
            recommendations = recommendations[: effective.max_recommendations]
        except Exception:
            logger.exception("CF recommendation generation failed for user %s", user_id)
            return await self.handle_cold_start(user_id, effective, excluded)

        await write_cached(self._cache, cache_key, recommendations, _RESULTS, RECOMMENDATION_CACHE_TTL)
        return recommendations

    async def _recommend(self, profile: UserProfile, config: CFConfiguration) -> list[RecommendationResult]:
        if config.method is RecommendationMethod.USER_BASED:
            return await self._user_based(profile, config)
        if config.method is RecommendationMethod.ITEM_BASED:
            return await self._item_based(profile, config)

        user_based, item_based = await asyncio.gather(
            self._user_based(profile, config),
            self._item_based(profile, config),
        )
        blended = self._blend(user_based, item_based)
        if config.method is RecommendationMethod.BLENDED:
            return blended
        return self._hybrid(user_based, item_based, blended)

    async def _user_based(self, profile: UserProfile, config: CFConfiguration) -> list[RecommendationResult]:
        neighbours = await self.find_similar_users(
            profile.user_id, NEIGHBOURHOOD_SIZE, config.similarity_threshold
        )
        if not neighbours:
            return []

        scores: dict[str, float] = {}
        supporters: dict[str, list[UserSimilarity]] = {}
        for sim in neighbours:
            other = await self.get_user_profile(sim.other(profile.user_id))
            for item_id, rating in other.interactions.items():
                if item_id in profile.interactions:
                    continue
                scores[item_id] = scores.get(item_id, 0.0) + sim.similarity * rating * sim.confidence
                supporters.setdefault(item_id, []).append(sim)

        max_score = max(scores.values(), default=0.0)
        results = []
        for item_id, score in scores.items():
            support = supporters[item_id]
            novelty = _novelty(len(support), len(neighbours))
            results.append(
                RecommendationResult(
                    item_id=item_id,
                    score=score,
                    method=RecommendationMethod.USER_BASED,
                    explanation=RecommendationExplanation(
                        similar_users=[
                            SimilarEntity(id=s.other(profile.user_id), similarity=s.similarity)
                            for s in support[:3]
                        ],
                        confidence=min(len(support) / SUPPORT_SATURATION, 1.0),
                    ),
                    metadata=RecommendationMetadata(
                        novelty=novelty,
                        serendipity=_serendipity(novelty, score, max_score),
                        coverage=METHOD_COVERAGE[RecommendationMethod.USER_BASED],
                    ),
                )
            )
        return _ranked(results)

    async def _item_based(self, profile: UserProfile, config: CFConfiguration) -> list[RecommendationResult]:
        # Seed from the user's strongest ratings only; each seed costs a
        # neighbourhood lookup.
        seeds = sorted(profile.interactions.items(), key=lambda kv: (-kv[1], kv[0]))[:MAX_SEED_ITEMS]

        scores: dict[str, float] = {}
        supporters: dict[str, list[tuple[str, ItemSimilarity]]] = {}
        for seed_id, rating in seeds:
            for sim in await self.find_similar_items(seed_id, SIMILAR_ITEMS_PER_SEED, config.similarity_threshold):
                candidate = sim.other(seed_id)
                if candidate in profile.interactions:
                    continue
                scores[candidate] = scores.get(candidate, 0.0) + sim.similarity * rating * sim.confidence
                supporters.setdefault(candidate, []).append((seed_id, sim))

        max_score = max(scores.values(), default=0.0)
        results = []
        for item_id, score in scores.items():
            support = supporters[item_id]
            novelty = _novelty(len(support), len(seeds))
            results.append(
                RecommendationResult(
                    item_id=item_id,
                    score=score,
                    method=RecommendationMethod.ITEM_BASED,
                    explanation=RecommendationExplanation(
                        similar_items=[
                            SimilarEntity(id=seed_id, similarity=sim.similarity)
                            for seed_id, sim in support[:3]
                        ],
                        confidence=min(len(support) / SUPPORT_SATURATION, 1.0),
                    ),
                    metadata=RecommendationMetadata(
                        novelty=novelty,
                        serendipity=_serendipity(novelty, score, max_score),
                        coverage=METHOD_COVERAGE[RecommendationMethod.ITEM_BASED],
                    ),
                )
            )
        return _ranked(results)

    def _blend(
        self,
        user_based: list[RecommendationResult],
        item_based: list[RecommendationResult],
    ) -> list[RecommendationResult]:
        combined: dict[str, float] = {}
        novelty: dict[str, list[float]] = {}
        for method, results in (
            (RecommendationMethod.USER_BASED, user_based),
            (RecommendationMethod.ITEM_BASED, item_based),
        ):
            for rec in results:
                combined[rec.item_id] = combined.get(rec.item_id, 0.0) + rec.score * BLEND_WEIGHTS[method]
                novelty.setdefault(rec.item_id, []).append(rec.metadata.novelty)

        max_score = max(combined.values(), default=0.0)
        results = []
        for item_id, score in combined.items():
            item_novelty = sum(novelty[item_id]) / len(novelty[item_id])
            results.append(
                RecommendationResult(
                    item_id=item_id,
                    score=score,
                    method=RecommendationMethod.BLENDED,
                    explanation=RecommendationExplanation(
                        shared_preferences=["blended_prediction"],
                        confidence=0.8,
                    ),
                    metadata=RecommendationMetadata(
                        novelty=item_novelty,
                        serendipity=_serendipity(item_novelty, score, max_score),
                        coverage=METHOD_COVERAGE[RecommendationMethod.BLENDED],
                    ),
                )
            )
        return _ranked(results)

    def _hybrid(
        self,
        user_based: list[RecommendationResult],
        item_based: list[RecommendationResult],
        blended: list[RecommendationResult],
    ) -> list[RecommendationResult]:
        combined: dict[str, float] = {}
        methods: dict[str, list[RecommendationMethod]] = {}
        novelty: dict[str, list[float]] = {}
        similar_users: dict[str, list[SimilarEntity]] = {}
        similar_items: dict[str, list[SimilarEntity]] = {}

        for method, results in (
            (RecommendationMethod.USER_BASED, user_based),
            (RecommendationMethod.ITEM_BASED, item_based),
            (RecommendationMethod.BLENDED, blended),
        ):
            for rec in results:
                combined[rec.item_id] = combined.get(rec.item_id, 0.0) + rec.score * HYBRID_WEIGHTS[method]
                methods.setdefault(rec.item_id, []).append(method)
                novelty.setdefault(rec.item_id, []).append(rec.metadata.novelty)
                if rec.explanation.similar_users:
                    similar_users[rec.item_id] = rec.explanation.similar_users
                if rec.explanation.similar_items:
                    similar_items[rec.item_id] = rec.explanation.similar_items

        max_score = max(combined.values(), default=0.0)
        results = []
        for item_id, score in combined.items():
            item_novelty = sum(novelty[item_id]) / len(novelty[item_id])
            results.append(
                RecommendationResult(
                    item_id=item_id,
                    score=score,
                    method=RecommendationMethod.HYBRID,
                    explanation=RecommendationExplanation(
                        similar_users=similar_users.get(item_id),
                        similar_items=similar_items.get(item_id),
                        shared_preferences=[f"{len(methods[item_id])}_method_agreement"],
                        confidence=0.85,
                    ),
                    metadata=RecommendationMetadata(
                        novelty=item_novelty,
                        serendipity=_serendipity(item_novelty, score, max_score),
                        coverage=METHOD_COVERAGE[RecommendationMethod.HYBRID],
                    ),
                )
            )
        return _ranked(results)

    async def _categories(self, item_ids: list[str]) -> dict[str, str]:
        """Coarse category per item: first tag, else author."""
        if not item_ids:
            return {}
        try:
            posts = await self._content.find_posts(PostFilter(ids=item_ids, limit=len(item_ids)))
        except Exception:
            logger.warning("Could not resolve categories for %d items", len(item_ids), exc_info=True)
            return {}
        by_id = {p.id: p for p in posts}
        return {item_id: _category_of(by_id.get(item_id), item_id) for item_id in item_ids}

    # ------------------------------------------------------------------
    # Cold start
    # ------------------------------------------------------------------

    async def handle_cold_start(
        self,
        user_id: str,
        config: CFConfiguration | dict[str, Any] | None = None,
        exclude_items: Iterable[str] = (),
    ) -> list[RecommendationResult]:
        """Exploratory recommendations for users without enough history.

        ``content_based`` currently degrades to ``popular``.  Results carry
        low confidence and high novelty so downstream ranking treats them as
        exploration.
        """
        effective = resolve_cf_config(config, base=self._config)
        excluded = set(exclude_items)
        strategy = effective.cold_start_strategy
        limit = effective.max_recommendations

        try:
            if strategy is ColdStartStrategy.RANDOM:
                scored = await self._random_items(limit, excluded)
            else:
                scored = await self._popular_items(limit, excluded)
        except Exception:
            logger.exception("Cold start (%s) failed for user %s", strategy.value, user_id)
            return []

        return [
            RecommendationResult(
                item_id=item_id,
                score=score,
                method=RecommendationMethod.COLD_START,
                explanation=RecommendationExplanation(
                    shared_preferences=[f"new_user_{strategy.value}_content"],
                    confidence=COLD_START_CONFIDENCE,
                ),
                metadata=COLD_START_METADATA,
            )
            for item_id, score in scored
        ]

    async def _popular_items(self, limit: int, excluded: set[str]) -> list[tuple[str, float]]:
        posts = await self._content.find_posts(
            PostFilter(since=self._clock() - POPULAR_WINDOW, limit=max(limit * POPULAR_POOL_FACTOR, 100))
        )
        # Stable sort: equal engagement keeps the store's newest-first order.
        posts = sorted(
            (p for p in posts if p.id not in excluded),
            key=lambda p: p.engagement.total,
            reverse=True,
        )[:limit]
        return [(p.id, 1.0 - index / max(limit, 1)) for index, p in enumerate(posts)]

    async def _random_items(self, limit: int, excluded: set[str]) -> list[tuple[str, float]]:
        posts = await self._content.find_posts(PostFilter(limit=limit * 2))
        ids = [p.id for p in posts if p.id not in excluded]
        self._rng.shuffle(ids)
        return [(item_id, self._rng.random()) for item_id in ids[:limit]]

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    async def update_user_interaction(
        self,
        user_id: str,
        item_id: str,
        interaction_type: InteractionType | str,
        weight: float = 1.0,
        metadata: dict[str, Any] | None = None,
    ) -> Interaction | None:
        """Persist an interaction and invalidate what depends on it.

        Returns the stored record, or ``None`` if the store rejected it.
        Similarity recomputation is queued, never awaited.
        """
        itype = parse_interaction_type(interaction_type)
        meta = dict(metadata or {})
        rating = interaction_to_rating(itype, weight, meta.get("time_spent_ms"))
        record = Interaction(
            id=f"cf_{uuid.uuid4().hex}",
            user_id=user_id,
            target_id=item_id,
            interaction_type=itype,
            metadata={**meta, "weight": weight, "rating": rating},
            created_at=self._clock(),
        )
        try:
            await self._interactions.create_interaction(record)
        except Exception:
            logger.exception("Failed to persist interaction %s → %s", user_id, item_id)
            return None

        await self.invalidate_user(user_id)
        await self.invalidate_item(item_id)

        if self._config.realtime_updates:
            self._background.spawn(
                self._queue.enqueue(
                    UPDATE_QUEUE,
                    {"user_id": user_id, "item_id": item_id, "timestamp": record.created_at.isoformat()},
                ),
                name=f"cf-update:{user_id}:{item_id}",
            )
        return record

    async def invalidate_user(self, user_id: str) -> None:
        uid = escape_glob(user_id)
        await invalidate_patterns(
            self._cache,
            [
                f"cf_recs:{uid}:*",
                f"similar_users:{uid}:*",
                f"user_sim:{uid}:*",
                f"user_sim:*:{uid}",
                f"cf_profile:user:{uid}",
            ],
        )

    async def invalidate_item(self, item_id: str) -> None:
        iid = escape_glob(item_id)
        await invalidate_patterns(
            self._cache,
            [
                f"item_sim:{iid}:*",
                f"item_sim:*:{iid}",
                f"similar_items:{iid}:*",
                f"cf_profile:item:{iid}",
            ],
        )

    async def refresh_similarities(self, user_id: str, item_id: str) -> None:
        """Recompute neighbourhoods after an interaction (queue consumer side)."""
        await self.invalidate_user(user_id)
        await self.invalidate_item(item_id)
        await self.find_similar_users(user_id, NEIGHBOURHOOD_SIZE, self._config.similarity_threshold)
        await self.find_similar_items(item_id, SIMILAR_ITEMS_PER_SEED, self._config.similarity_threshold)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_user_profile(self, user_id: str) -> UserProfile:
        key = f"cf_profile:user:{user_id}"
        cached = await read_cached(self._cache, key, _USER_PROFILE)
        if cached is not None:
            return cached
        return await self._flights.do(key, lambda: self._load_user_profile(user_id, key))

    async def _load_user_profile(self, user_id: str, key: str) -> UserProfile:
        interactions = await self._interactions.find_interactions(
            InteractionFilter(user_id=user_id, limit=MAX_PROFILE_INTERACTIONS)
        )
        profile = UserProfile(
            user_id=user_id,
            interactions=ratings_by(interactions, "target_id"),
            last_active=interactions[0].created_at if interactions else None,
        )
        await write_cached(self._cache, key, profile, _USER_PROFILE, PROFILE_CACHE_TTL)
        return profile

    async def get_item_profile(self, item_id: str) -> ItemProfile:
        key = f"cf_profile:item:{item_id}"
        cached = await read_cached(self._cache, key, _ITEM_PROFILE)
        if cached is not None:
            return cached
        return await self._flights.do(key, lambda: self._load_item_profile(item_id, key))

    async def _load_item_profile(self, item_id: str, key: str) -> ItemProfile:
        interactions, posts = await asyncio.gather(
            self._interactions.find_interactions(
                InteractionFilter(target_id=item_id, limit=MAX_PROFILE_INTERACTIONS)
            ),
            self._content.find_posts(PostFilter(ids=[item_id], limit=1)),
        )
        ratings = ratings_by(interactions, "user_id")
        post = posts[0] if posts else None
        quality = 0.7
        if post is not None:
            reply_ratio = post.engagement.replies / max(post.engagement.likes, 1)
            quality = clamp01(0.7 + 0.1 * reply_ratio)
        profile = ItemProfile(
            item_id=item_id,
            ratings=ratings,
            features=list(post.content_embedding or []) if post else [],
            popularity=len(ratings),
            quality=quality,
        )
        await write_cached(self._cache, key, profile, _ITEM_PROFILE, PROFILE_CACHE_TTL)
        return profile

    # ------------------------------------------------------------------
    # Similarities
    # ------------------------------------------------------------------

    async def calculate_user_similarity(
        self,
        user_id1: str,
        user_id2: str,
        force_recalculate: bool = False,
    ) -> UserSimilarity | None:
        """Cosine similarity over shared items, or ``None`` when there is not enough signal."""
        if user_id1 == user_id2:
            return None
        a, b = _pair(user_id1, user_id2)
        key = f"user_sim:{a}:{b}"
        if not force_recalculate:
            cached = await read_cached(self._cache, key, _USER_SIM)
            if cached is not None:
                return cached
        return await self._flights.do(key, lambda: self._compute_user_similarity(a, b, key))

    async def _compute_user_similarity(self, a: str, b: str, key: str) -> UserSimilarity | None:
        profile_a, profile_b = await asyncio.gather(self.get_user_profile(a), self.get_user_profile(b))
        if len(profile_a.interactions) < MIN_INTERACTIONS or len(profile_b.interactions) < MIN_INTERACTIONS:
            return None

        shared = profile_a.interactions.keys() & profile_b.interactions.keys()
        if len(shared) < self._config.min_shared_items:
            return None

        similarity = UserSimilarity(
            user_id1=a,
            user_id2=b,
            similarity=clamp01(sparse_cosine_similarity(profile_a.interactions, profile_b.interactions, shared)),
            shared_items=len(shared),
            confidence=min(len(shared) / CONFIDENCE_SATURATION, 1.0),
            last_updated=self._clock(),
        )
        await write_cached(self._cache, key, similarity, _USER_SIM, SIMILARITY_CACHE_TTL)
        return similarity

    async def calculate_item_similarity(
        self,
        item_id1: str,
        item_id2: str,
        force_recalculate: bool = False,
    ) -> ItemSimilarity | None:
        """Rater-overlap cosine, blended 70/30 with content similarity when both items have features."""
        if item_id1 == item_id2:
            return None
        a, b = _pair(item_id1, item_id2)
        key = f"item_sim:{a}:{b}"
        if not force_recalculate:
            cached = await read_cached(self._cache, key, _ITEM_SIM)
            if cached is not None:
                return cached
        return await self._flights.do(key, lambda: self._compute_item_similarity(a, b, key))

    async def _compute_item_similarity(self, a: str, b: str, key: str) -> ItemSimilarity | None:
        profile_a, profile_b = await asyncio.gather(self.get_item_profile(a), self.get_item_profile(b))
        if len(profile_a.ratings) < MIN_INTERACTIONS or len(profile_b.ratings) < MIN_INTERACTIONS:
            return None

        shared = profile_a.ratings.keys() & profile_b.ratings.keys()
        if len(shared) < self._config.min_shared_items:
            return None

        similarity = clamp01(sparse_cosine_similarity(profile_a.ratings, profile_b.ratings, shared))
        if profile_a.features and profile_b.features and len(profile_a.features) == len(profile_b.features):
            content = max(0.0, cosine_similarity(profile_a.features, profile_b.features))
            similarity = RATING_SIMILARITY_WEIGHT * similarity + CONTENT_SIMILARITY_WEIGHT * content

        result = ItemSimilarity(
            item_id1=a,
            item_id2=b,
            similarity=clamp01(similarity),
            shared_users=len(shared),
            confidence=min(len(shared) / CONFIDENCE_SATURATION, 1.0),
            last_updated=self._clock(),
        )
        await write_cached(self._cache, key, result, _ITEM_SIM, SIMILARITY_CACHE_TTL)
        return result

    async def find_similar_users(
        self,
        user_id: str,
        limit: int = 20,
        min_similarity: float = 0.1,
    ) -> list[UserSimilarity]:
        """Nearest neighbours among users who rated any of the same items."""
        key = f"similar_users:{user_id}:{limit}:{min_similarity}"
        cached = await read_cached(self._cache, key, _USER_SIMS)
        if cached is not None:
            return cached

        profile = await self.get_user_profile(user_id)
        if not profile.interactions:
            return []
        interactions = await self._interactions.find_interactions(
            InteractionFilter(
                target_ids=list(profile.interactions),
                exclude_user_id=user_id,
                limit=MAX_PROFILE_INTERACTIONS,
            )
        )
        candidates = list(dict.fromkeys(i.user_id for i in interactions if i.user_id != user_id))
        candidates = candidates[:MAX_NEIGHBOUR_CANDIDATES]

        semaphore = asyncio.Semaphore(SIMILARITY_CONCURRENCY)

        async def score(candidate: str) -> UserSimilarity | None:
            async with semaphore:
                return await self.calculate_user_similarity(user_id, candidate)

        scored = await asyncio.gather(*(score(c) for c in candidates))
        similar = [s for s in scored if s is not None and s.similarity >= min_similarity]
        # Higher overlap wins ties; the neighbour id keeps the order total.
        similar.sort(key=lambda s: (-s.similarity, -s.shared_items, s.other(user_id)))
        similar = similar[:limit]

        await write_cached(self._cache, key, similar, _USER_SIMS, RECOMMENDATION_CACHE_TTL)
        return similar

    async def find_similar_items(
        self,
        item_id: str,
        limit: int = 20,
        min_similarity: float = 0.1,
    ) -> list[ItemSimilarity]:
        """Nearest items among those rated by the item's raters."""
        key = f"similar_items:{item_id}:{limit}:{min_similarity}"
        cached = await read_cached(self._cache, key, _ITEM_SIMS)
        if cached is not None:
            return cached

        profile = await self.get_item_profile(item_id)
        if not profile.ratings:
            return []
        interactions = await self._interactions.find_interactions(
            InteractionFilter(user_ids=list(profile.ratings), limit=MAX_PROFILE_INTERACTIONS)
        )
        candidates = list(dict.fromkeys(i.target_id for i in interactions if i.target_id != item_id))
        candidates = candidates[:MAX_NEIGHBOUR_CANDIDATES]

        semaphore = asyncio.Semaphore(SIMILARITY_CONCURRENCY)

        async def score(candidate: str) -> ItemSimilarity | None:
            async with semaphore:
                return await self.calculate_item_similarity(item_id, candidate)

        scored = await asyncio.gather(*(score(c) for c in candidates))
        similar = [s for s in scored if s is not None and s.similarity >= min_similarity]
        similar.sort(key=lambda s: (-s.similarity, -s.shared_users, s.other(item_id)))
        similar = similar[:limit]

        await write_cached(self._cache, key, similar, _ITEM_SIMS, RECOMMENDATION_CACHE_TTL)
        return similar

    async def affinity_for(self, user_id: str, limit: int = 20) -> dict[str, float]:
        """Similar user id → similarity, for the feed ranker's social signal.

        Read-only and failure-tolerant: returns ``{}`` when nothing is known.
        """
        try:
            neighbours = await self.find_similar_users(user_id, limit, self._config.similarity_threshold)
        except Exception:
            logger.warning("Affinity lookup failed for user %s", user_id, exc_info=True)
            return {}
        return {s.other(user_id): s.similarity for s in neighbours}

    # ------------------------------------------------------------------
    # Explanations
    # ------------------------------------------------------------------

    async def explain_recommendation(
        self,
        user_id: str,
        item_id: str,
        method: RecommendationMethod | str,
    ) -> list[str]:
        """Short human-readable reasons, specific to the generating method."""
        if not isinstance(method, RecommendationMethod):
            method = RecommendationMethod(BLENDED_ALIASES.get(method.lower(), method.lower()))
        try:
            if method is RecommendationMethod.USER_BASED:
                return await self._explain_user_based(user_id, item_id)
            if method is RecommendationMethod.ITEM_BASED:
                return await self._explain_item_based(user_id, item_id)
        except Exception:
            logger.warning("Could not explain %s for user %s", item_id, user_id, exc_info=True)
            return []

        if method is RecommendationMethod.BLENDED:
            return [
                "Model prediction based on your preferences",
                "Blends what similar users liked with content similar to yours",
            ]
        if method is RecommendationMethod.HYBRID:
            return [
                "Multiple recommendation signals agree",
                "Combines user preferences and content similarity",
            ]
        return ["Popular with people right now while we learn your preferences"]

    async def _explain_user_based(self, user_id: str, item_id: str) -> list[str]:
        similar = await self.find_similar_users(user_id, 5, self._config.similarity_threshold)
        likers = await self._interactions.find_interactions(
            InteractionFilter(
                target_id=item_id,
                interaction_types=[InteractionType.LIKE, InteractionType.REPOST],
            )
        )
        liker_ids = {i.user_id for i in likers}
        relevant = [s for s in similar if s.other(user_id) in liker_ids]
        if not relevant:
            return []
        return [
            "Users similar to you enjoyed this content",
            f"{len(relevant)} similar users interacted positively",
        ]

    async def _explain_item_based(self, user_id: str, item_id: str) -> list[str]:
        profile = await self.get_user_profile(user_id)
        similar = await self.find_similar_items(item_id, 5, self._config.similarity_threshold)
        relevant = [s for s in similar if s.other(item_id) in profile.interactions]
        if not relevant:
            return []
        return [
            "Similar to content you've enjoyed before",
            f"Based on {len(relevant)} similar items you liked",
        ]
