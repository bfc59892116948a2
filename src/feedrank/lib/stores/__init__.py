"""Collaborator interfaces and their production adapters."""

from .base import (
    BackgroundQueue,
    Cache,
    ContentStore,
    InteractionFilter,
    InteractionStore,
    PostFilter,
    TrendingSource,
    UserStore,
)

__all__ = [
    "BackgroundQueue",
    "Cache",
    "ContentStore",
    "InteractionFilter",
    "InteractionStore",
    "PostFilter",
    "TrendingSource",
    "UserStore",
]
