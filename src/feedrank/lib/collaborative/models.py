"""Collaborative-filtering data shapes and configuration."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ...models import utcnow
from ..errors import ConfigurationError


class RecommendationMethod(str, Enum):
    USER_BASED = "user_based"
    ITEM_BASED = "item_based"
    # Linear blend of user-based and item-based scores. Older clients call
    # this "ncf"; it is not a trained model.
    BLENDED = "blended"
    HYBRID = "hybrid"
    COLD_START = "cold_start"


class ColdStartStrategy(str, Enum):
    POPULAR = "popular"
    RANDOM = "random"
    CONTENT_BASED = "content_based"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class CFConfiguration(BaseModel):
    """Tunables for one recommendation request."""

    model_config = ConfigDict(frozen=True, extra="forbid", use_enum_values=False)

    method: RecommendationMethod = RecommendationMethod.HYBRID
    similarity_threshold: float = Field(0.1, ge=0.0, le=1.0)
    min_shared_items: int = Field(3, ge=1)
    max_recommendations: int = Field(50, ge=1, le=1000)
    max_per_category: int = Field(
        3, ge=1, description="Cap on results sharing a coarse category beyond the exempt head"
    )
    cold_start_strategy: ColdStartStrategy = ColdStartStrategy.POPULAR
    realtime_updates: bool = True

    @field_validator("method", mode="before")
    @classmethod
    def _accept_legacy_method(cls, value):
        if isinstance(value, str) and value.lower() == "ncf":
            return RecommendationMethod.BLENDED
        return value

    @field_validator("method")
    @classmethod
    def _not_cold_start(cls, value: RecommendationMethod) -> RecommendationMethod:
        if value is RecommendationMethod.COLD_START:
            raise ValueError("cold_start is an outcome, not a selectable method")
        return value


DEFAULT_CF_CONFIG = CFConfiguration()


def resolve_cf_config(
    overrides: CFConfiguration | dict[str, Any] | None = None,
    base: CFConfiguration = DEFAULT_CF_CONFIG,
) -> CFConfiguration:
    """Merge *overrides* into *base* and validate.

    Raises :class:`ConfigurationError` for unknown fields or invalid values.
    """
    if overrides is None:
        return base
    if isinstance(overrides, CFConfiguration):
        return overrides
    try:
        return CFConfiguration.model_validate({**base.model_dump(), **overrides})
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid recommendation configuration: {exc}") from exc


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

class UserProfile(BaseModel):
    user_id: str
    interactions: dict[str, float] = Field(
        default_factory=dict, description="item id → implicit rating in [0, 1]"
    )
    preferences: list[float] = Field(default_factory=list, description="Preference embedding")
    clusters: list[str] = Field(default_factory=list, description="Reserved for cluster tags")
    similar_users: list[str] = Field(default_factory=list)
    last_active: datetime | None = None


class ItemProfile(BaseModel):
    item_id: str
    ratings: dict[str, float] = Field(
        default_factory=dict, description="user id → implicit rating in [0, 1]"
    )
    features: list[float] = Field(default_factory=list, description="Content feature vector")
    popularity: int = 0
    quality: float = 0.7


# ---------------------------------------------------------------------------
# Similarities
# ---------------------------------------------------------------------------

class UserSimilarity(BaseModel):
    """Symmetric user pair; ``user_id1 <= user_id2`` always holds."""

    user_id1: str
    user_id2: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    shared_items: int
    confidence: float = Field(..., ge=0.0, le=1.0)
    last_updated: datetime = Field(default_factory=utcnow)

    def other(self, user_id: str) -> str:
        return self.user_id2 if user_id == self.user_id1 else self.user_id1


class ItemSimilarity(BaseModel):
    """Symmetric item pair; ``item_id1 <= item_id2`` always holds."""

    item_id1: str
    item_id2: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    shared_users: int
    confidence: float = Field(..., ge=0.0, le=1.0)
    categories: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)

    def other(self, item_id: str) -> str:
        return self.item_id2 if item_id == self.item_id1 else self.item_id1


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SimilarEntity(BaseModel):
    id: str
    similarity: float


class RecommendationExplanation(BaseModel):
    similar_users: list[SimilarEntity] | None = None
    similar_items: list[SimilarEntity] | None = None
    shared_preferences: list[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)


class RecommendationMetadata(BaseModel):
    novelty: float = Field(..., ge=0.0, le=1.0)
    serendipity: float = Field(..., ge=0.0, le=1.0)
    coverage: float = Field(..., ge=0.0, le=1.0)


class RecommendationResult(BaseModel):
    item_id: str
    score: float
    method: RecommendationMethod
    explanation: RecommendationExplanation
    metadata: RecommendationMetadata
