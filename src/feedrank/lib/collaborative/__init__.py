"""Collaborative filtering over implicit interaction ratings."""

from .engine import CollaborativeFilteringEngine
from .models import (
    DEFAULT_CF_CONFIG,
    CFConfiguration,
    ColdStartStrategy,
    ItemProfile,
    ItemSimilarity,
    RecommendationMethod,
    RecommendationResult,
    UserProfile,
    UserSimilarity,
    resolve_cf_config,
)
from .ratings import interaction_to_rating

__all__ = [
    "CollaborativeFilteringEngine",
    "DEFAULT_CF_CONFIG",
    "CFConfiguration",
    "ColdStartStrategy",
    "ItemProfile",
    "ItemSimilarity",
    "RecommendationMethod",
    "RecommendationResult",
    "UserProfile",
    "UserSimilarity",
    "interaction_to_rating",
    "resolve_cf_config",
]
