"""Per-candidate ranking signals.

Every signal is a pure function of the candidate, the user's context and the
effective configuration, and is clamped to ``[0, 1]`` whatever the input
(missing embeddings, zero engagement, timestamps in the future).
"""

import math
from datetime import datetime

from ..candidates.trending import candidate_tokens, matched_velocity
from ..text import keywords
from ..vectors import clamp01, cosine_similarity
from .models import ContentCandidate, FeedConfiguration, RankingSignals, UserContext

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

NEUTRAL_RELEVANCE = 0.5

FOLLOWED_AUTHOR_BOOST = 0.3
MAX_AFFINITY_BOOST = 0.3
AFFINITY_PER_POSITIVE = 0.01
SIMILAR_AUTHOR_WEIGHT = 0.1
FEEDBACK_WEIGHT = 0.1

FRESH_FLOOR = 0.1

BASE_QUALITY = 0.7
MAX_LENGTH_BONUS = 0.2
CHARS_PER_LENGTH_POINT = 1000
REPLY_RATIO_WEIGHT = 0.1

# Trend velocity at which the trending signal saturates.
VELOCITY_SCALE = 10.0

CONTEXTUAL_TAG_BOOST = 0.1
WORK_HOURS = range(9, 18)
INDIRECT_PROXIMITY = 0.3


def relevance_signal(candidate: ContentCandidate, context: UserContext) -> float:
    embedding = candidate.content_embedding
    interest = context.interest_vector
    if not embedding or not interest or len(embedding) != len(interest):
        return NEUTRAL_RELEVANCE
    return clamp01((cosine_similarity(embedding, interest) + 1.0) / 2.0)


def social_signal(candidate: ContentCandidate, context: UserContext) -> float:
    e = candidate.engagement
    engagement_rate = (e.likes + e.reposts + e.replies) / max(e.views, 1)
    author_boost = FOLLOWED_AUTHOR_BOOST if candidate.author_id in context.following else 0.0
    affinity_boost = min(
        MAX_AFFINITY_BOOST,
        AFFINITY_PER_POSITIVE * context.positive_engagements
        + SIMILAR_AUTHOR_WEIGHT * context.affinity.get(candidate.author_id, 0.0)
        + FEEDBACK_WEIGHT * context.feedback_signal,
    )
    return clamp01(engagement_rate + author_boost + affinity_boost)


def freshness_signal(candidate: ContentCandidate, window_hours: float, now: datetime) -> float:
    """Exponential decay with time constant ``window / 3``, floored at 0.1.

    Age 0 (or a future timestamp) scores 1.0; at or past the window the
    score is exactly the floor.
    """
    age_hours = max((now - candidate.created_at).total_seconds() / 3600.0, 0.0)
    if age_hours >= window_hours:
        return FRESH_FLOOR
    return clamp01(max(FRESH_FLOOR, math.exp(-age_hours / (window_hours / 3.0))))


def quality_signal(candidate: ContentCandidate) -> float:
    e = candidate.engagement
    length_bonus = min(len(candidate.content) / CHARS_PER_LENGTH_POINT, MAX_LENGTH_BONUS)
    reply_ratio = e.replies / max(e.likes, 1)
    return clamp01(BASE_QUALITY + length_bonus + REPLY_RATIO_WEIGHT * reply_ratio)


def candidate_topics(candidate: ContentCandidate) -> set[str]:
    if candidate.tags:
        return {t.lower().lstrip("#") for t in candidate.tags}
    return keywords(candidate.content)


def diversity_signal(candidate: ContentCandidate, context: UserContext, max_bonus: float) -> float:
    """``max_bonus × (1 − Jaccard(candidate topics, recent topics))``."""
    topics = candidate_topics(candidate)
    recent = set(context.recent_topics)
    union = topics | recent
    overlap = len(topics & recent) / len(union) if union else 0.0
    return clamp01(max_bonus * (1.0 - overlap))


def trending_signal(candidate: ContentCandidate, context: UserContext) -> float:
    if not context.trending_topics:
        return 0.0
    velocity = matched_velocity(candidate_tokens(candidate.content, candidate.tags), context.trending_topics)
    return clamp01(velocity / VELOCITY_SCALE)


def personalized_boost(candidate: ContentCandidate, context: UserContext) -> float:
    tags = {t.lower() for t in candidate.tags}
    boost = 0.0
    if context.session.is_weekend and "weekend" in tags:
        boost += CONTEXTUAL_TAG_BOOST
    if context.session.hour_of_day in WORK_HOURS and "work" in tags:
        boost += CONTEXTUAL_TAG_BOOST
    return clamp01(boost)


def network_proximity(candidate: ContentCandidate, context: UserContext) -> float:
    if candidate.author_id in context.following:
        return 1.0
    if candidate.author_id in context.affinity:
        return clamp01(max(INDIRECT_PROXIMITY, context.affinity[candidate.author_id]))
    return 0.0


def compute_signals(
    candidate: ContentCandidate,
    context: UserContext,
    config: FeedConfiguration,
    now: datetime,
) -> RankingSignals:
    return RankingSignals(
        relevance=relevance_signal(candidate, context),
        social=social_signal(candidate, context),
        freshness=freshness_signal(candidate, config.freshness_window_hours, now),
        quality=quality_signal(candidate),
        diversity=diversity_signal(candidate, context, config.diversity_threshold),
        trending=trending_signal(candidate, context),
        personalized_boost=personalized_boost(candidate, context),
        network_proximity=network_proximity(candidate, context),
    )


def explain(signals: RankingSignals) -> list[str]:
    """Descriptive reasons for a ranked item; never affects ranking."""
    reasons = []
    if signals.social > 0.7:
        reasons.append("High engagement expected")
    if signals.freshness > 0.8:
        reasons.append("Recent content")
    if signals.relevance > 0.7:
        reasons.append("Matches your interests")
    if signals.trending > 0.5:
        reasons.append("Trending topic")
    return reasons
