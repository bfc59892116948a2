"""Collaborator interfaces consumed by the engines.

The engines only talk to the outside world through these abstract classes,
so the persistent store, the key-value cache and the background queue can
be swapped (Elasticsearch/Redis in production, in-memory fakes in tests).
Every method is async; adapters raise :class:`~feedrank.lib.errors.StoreError`
on infrastructure failure.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from ...models import FeedbackRecord, Interaction, InteractionType, Post, TrendingTopic


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

class PostFilter(BaseModel):
    """Selection criteria for :meth:`ContentStore.find_posts`.

    Results are newest-first unless ``text_terms`` or ``near_vector`` is set,
    in which case the store's relevance order is used.
    """

    ids: list[str] | None = None
    author_ids: list[str] | None = None
    exclude_author_ids: list[str] | None = None
    since: datetime | None = None
    text_terms: list[str] | None = Field(
        None, description="Match posts whose content contains any of these keywords"
    )
    near_vector: list[float] | None = Field(
        None, description="Nearest-neighbour retrieval around this embedding"
    )
    limit: int = Field(100, ge=1)


class InteractionFilter(BaseModel):
    """Selection criteria for interaction lookups (newest first)."""

    user_id: str | None = None
    user_ids: list[str] | None = None
    target_id: str | None = None
    target_ids: list[str] | None = None
    exclude_user_id: str | None = None
    interaction_types: list[InteractionType] | None = None
    since: datetime | None = None
    limit: int | None = Field(None, ge=1)


TrendingWindow = Literal["1h", "6h", "24h"]


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class ContentStore(ABC):
    @abstractmethod
    async def find_posts(self, post_filter: PostFilter) -> list[Post]:
        ...


class InteractionStore(ABC):
    @abstractmethod
    async def find_interactions(self, interaction_filter: InteractionFilter) -> list[Interaction]:
        ...

    @abstractmethod
    async def create_interaction(self, record: Interaction) -> None:
        ...

    @abstractmethod
    async def count_interactions(self, interaction_filter: InteractionFilter) -> int:
        ...

    @abstractmethod
    async def create_feedback(self, record: FeedbackRecord) -> None:
        ...

    @abstractmethod
    async def count_feedback(self, user_id: str) -> int:
        ...


class UserStore(ABC):
    @abstractmethod
    async def get_preferences(self, user_id: str) -> dict[str, Any]:
        """Stored preference document for the user (empty when unknown)."""
        ...

    @abstractmethod
    async def find_following(self, user_id: str) -> list[str]:
        """Ids of the authors *user_id* follows."""
        ...


class TrendingSource(ABC):
    @abstractmethod
    async def get_trending_topics(
        self,
        limit: int = 10,
        window: TrendingWindow = "6h",
    ) -> list[TrendingTopic]:
        """Active topics within *window*, highest velocity first."""
        ...


# ---------------------------------------------------------------------------
# Ephemeral state
# ---------------------------------------------------------------------------

class Cache(ABC):
    """Key-value store with TTL and no transactional semantics."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        ...

    @abstractmethod
    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        ...

    @abstractmethod
    async def list_keys(self, pattern: str) -> list[str]:
        """Keys matching a glob-style *pattern* (``*`` wildcard)."""
        ...

    @abstractmethod
    async def push_bounded(self, key: str, value: bytes, max_length: int, ttl_seconds: int) -> None:
        """Prepend *value* to the list at *key*, keeping the newest *max_length* entries."""
        ...

    @abstractmethod
    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[bytes]:
        ...

    @abstractmethod
    async def hash_set(self, key: str, field: str, value: str, ttl_seconds: int) -> None:
        ...


class BackgroundQueue(ABC):
    """Fire-and-forget work queue; at-most-once delivery is acceptable."""

    @abstractmethod
    async def enqueue(self, queue_name: str, payload: dict[str, Any]) -> None:
        ...
