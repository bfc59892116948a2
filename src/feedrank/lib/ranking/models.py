"""Ranking-side data shapes and feed configuration."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ...models import (
    AuthorType,
    EngagementCounts,
    FeedItem,
    FeedItemMetadata,
    FeedItemMetrics,
    InteractionType,
    Post,
    TrendingTopic,
)
from ..errors import ConfigurationError

FeedAlgorithm = Literal["hybrid", "chronological", "trending", "following_only"]


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

class ContentCandidate(BaseModel):
    """A post under consideration for a feed."""

    id: str
    author_id: str
    author_type: AuthorType = "user"
    content: str = ""
    content_embedding: list[float] | None = None
    created_at: datetime
    engagement: EngagementCounts = Field(default_factory=EngagementCounts)
    tags: list[str] = Field(default_factory=list)
    thread_id: str | None = None
    parent_id: str | None = None
    visibility: str = "PUBLIC"
    source: str | None = Field(None, description="Name of the generator that produced this candidate")

    @classmethod
    def from_post(cls, post: Post, source: str | None = None) -> "ContentCandidate":
        return cls(**post.model_dump(), source=source)


# ---------------------------------------------------------------------------
# User context
# ---------------------------------------------------------------------------

class EngagementEvent(BaseModel):
    post_id: str
    interaction_type: InteractionType
    rating: float = Field(..., ge=0.0, le=1.0)
    created_at: datetime


class SessionSignals(BaseModel):
    device_type: Literal["mobile", "desktop", "tablet", "unknown"] = "unknown"
    hour_of_day: int = Field(0, ge=0, le=23)
    is_weekend: bool = False


class UserContext(BaseModel):
    """Everything one ranking pass knows about the requesting user."""

    user_id: str
    preferences: dict[str, Any] = Field(default_factory=dict)
    following: list[str] = Field(default_factory=list)
    recent_engagements: list[EngagementEvent] = Field(default_factory=list)
    interest_vector: list[float] | None = None
    recent_topics: dict[str, int] = Field(
        default_factory=dict, description="Topic → count over the user's recent engagements"
    )
    affinity: dict[str, float] = Field(
        default_factory=dict, description="Similar user id → similarity"
    )
    feedback_signal: float = Field(
        0.0, ge=0.0, le=1.0, description="Recency-decayed positive feedback from the preference list"
    )
    trending_topics: list[TrendingTopic] = Field(default_factory=list)
    session: SessionSignals = Field(default_factory=SessionSignals)

    @property
    def positive_engagements(self) -> int:
        return sum(
            1
            for e in self.recent_engagements
            if e.interaction_type in (InteractionType.LIKE, InteractionType.REPOST)
        )


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class RankingSignals(BaseModel):
    relevance: float = Field(..., ge=0.0, le=1.0)
    social: float = Field(..., ge=0.0, le=1.0)
    freshness: float = Field(..., ge=0.0, le=1.0)
    quality: float = Field(..., ge=0.0, le=1.0)
    diversity: float = Field(..., ge=0.0, le=1.0)
    trending: float = Field(..., ge=0.0, le=1.0)
    # Computed for analysis; not part of the weighted score.
    personalized_boost: float = Field(0.0, ge=0.0, le=1.0)
    network_proximity: float = Field(0.0, ge=0.0, le=1.0)


class ScoringWeights(BaseModel):
    """Relative signal weights; they need not sum to 1."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    relevance: float = Field(0.40, ge=0.0)
    social: float = Field(0.30, ge=0.0)
    freshness: float = Field(0.20, ge=0.0)
    quality: float = Field(0.10, ge=0.0)
    diversity: float = Field(0.05, ge=0.0)
    trending: float = Field(0.05, ge=0.0)

    @model_validator(mode="after")
    def _not_all_zero(self) -> "ScoringWeights":
        if sum(self.model_dump().values()) <= 0:
            raise ValueError("at least one scoring weight must be positive")
        return self

    def score(self, signals: RankingSignals) -> float:
        return (
            signals.relevance * self.relevance
            + signals.social * self.social
            + signals.freshness * self.freshness
            + signals.quality * self.quality
            + signals.diversity * self.diversity
            + signals.trending * self.trending
        )


class FeedConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    algorithm: FeedAlgorithm = "hybrid"
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    candidate_pool_size: int = Field(500, ge=1)
    final_feed_size: int = Field(50, ge=1)
    diversity_threshold: float = Field(
        0.3, ge=0.0, le=1.0, description="Largest diversity signal a fully novel candidate can earn"
    )
    max_items_per_author: int = Field(3, ge=1)
    freshness_window_hours: float = Field(48, gt=0)
    min_engagement_threshold: int = Field(0, ge=0)
    experiment_enabled: bool = True

    @model_validator(mode="after")
    def _feed_fits_pool(self) -> "FeedConfiguration":
        if self.final_feed_size > self.candidate_pool_size:
            raise ValueError("final_feed_size cannot exceed candidate_pool_size")
        return self


DEFAULT_FEED_CONFIG = FeedConfiguration()


def resolve_feed_config(
    overrides: FeedConfiguration | dict[str, Any] | None = None,
    base: FeedConfiguration = DEFAULT_FEED_CONFIG,
) -> FeedConfiguration:
    """Merge partial *overrides* (weights merge key-by-key) into *base*.

    Raises :class:`ConfigurationError` when the result is invalid.
    """
    if overrides is None:
        return base
    if isinstance(overrides, FeedConfiguration):
        return overrides
    merged = base.model_dump()
    for key, value in overrides.items():
        if key == "weights" and isinstance(value, dict):
            merged["weights"] = {**merged["weights"], **value}
        else:
            merged[key] = value
    try:
        return FeedConfiguration.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid feed configuration: {exc}") from exc


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class RankedContent(BaseModel):
    candidate: ContentCandidate
    signals: RankingSignals | None = Field(None, description="Absent for fallback items")
    final_score: float
    rank: int = 0
    explanation: list[str] = Field(default_factory=list)
    experiment_group: str | None = None

    def to_feed_item(self) -> FeedItem:
        c = self.candidate
        return FeedItem(
            content_id=c.id,
            timestamp=c.created_at,
            metrics=FeedItemMetrics(**c.engagement.model_dump()),
            metadata=FeedItemMetadata(
                author_id=c.author_id,
                author_type=c.author_type.upper(),
                content=c.content,
                parent_id=c.parent_id,
                thread_id=c.thread_id,
                visibility=c.visibility,
                updated_at=c.created_at,
            ),
            explanation=self.explanation,
            experiment_group=self.experiment_group,
        )


class ExperimentResult(BaseModel):
    variant: str
    feed: list[RankedContent]
