"""Shared in-memory fakes for engine and router tests.

These stand in for Elasticsearch/Redis at the collaborator-interface level
so the engines can be exercised end to end without infrastructure.
"""

import re
from datetime import datetime, timedelta, timezone

import pytest

from .lib.errors import StoreError
from .lib.stores.base import (
    BackgroundQueue,
    Cache,
    ContentStore,
    InteractionFilter,
    InteractionStore,
    PostFilter,
    TrendingSource,
    UserStore,
)
from .lib.text import keywords
from .lib.vectors import cosine_similarity
from .models import EngagementCounts, FeedbackRecord, Interaction, InteractionType, Post, TrendingTopic

# Thursday midday; weekday-dependent logic stays predictable.
NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def make_post(
    post_id: str,
    author_id: str = "author-1",
    *,
    age: timedelta = timedelta(hours=1),
    content: str = "",
    embedding: list[float] | None = None,
    likes: int = 0,
    reposts: int = 0,
    replies: int = 0,
    views: int = 0,
    tags: list[str] | None = None,
) -> Post:
    return Post(
        id=post_id,
        author_id=author_id,
        content=content or f"post {post_id}",
        content_embedding=embedding,
        created_at=NOW - age,
        engagement=EngagementCounts(likes=likes, reposts=reposts, replies=replies, views=views),
        tags=tags or [],
        thread_id=post_id,
    )


def make_interaction(
    user_id: str,
    target_id: str,
    interaction_type: InteractionType = InteractionType.LIKE,
    *,
    age: timedelta = timedelta(hours=1),
    metadata: dict | None = None,
) -> Interaction:
    return Interaction(
        id=f"{user_id}-{target_id}-{interaction_type.value}",
        user_id=user_id,
        target_id=target_id,
        interaction_type=interaction_type,
        metadata=metadata or {},
        created_at=NOW - age,
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class FakeContentStore(ContentStore):
    """Posts in memory; ``fail_when(filter)`` simulates an outage per query."""

    def __init__(self, posts: list[Post] | None = None):
        self.posts: list[Post] = list(posts or [])
        self.calls: list[PostFilter] = []
        self.fail = False
        self.fail_when = None

    def add(self, *posts: Post) -> None:
        self.posts.extend(posts)

    async def find_posts(self, post_filter: PostFilter) -> list[Post]:
        self.calls.append(post_filter)
        if self.fail or (self.fail_when is not None and self.fail_when(post_filter)):
            raise StoreError("content store unavailable")

        posts = list(self.posts)
        if post_filter.ids is not None:
            posts = [p for p in posts if p.id in post_filter.ids]
        if post_filter.author_ids is not None:
            posts = [p for p in posts if p.author_id in post_filter.author_ids]
        if post_filter.exclude_author_ids:
            posts = [p for p in posts if p.author_id not in post_filter.exclude_author_ids]
        if post_filter.since is not None:
            posts = [p for p in posts if p.created_at >= post_filter.since]
        if post_filter.text_terms:
            terms = set(post_filter.text_terms)
            posts = [p for p in posts if terms & (keywords(p.content) | {t.lower() for t in p.tags})]

        if post_filter.near_vector:
            posts = [p for p in posts if p.content_embedding]
            posts.sort(key=lambda p: cosine_similarity(p.content_embedding, post_filter.near_vector), reverse=True)
        elif not post_filter.text_terms:
            posts.sort(key=lambda p: p.created_at, reverse=True)
        return posts[: post_filter.limit]


class FakeInteractionStore(InteractionStore):
    def __init__(self, interactions: list[Interaction] | None = None):
        self.interactions: list[Interaction] = list(interactions or [])
        self.feedback: list[FeedbackRecord] = []
        self.fail = False
        self.fail_writes = False
        self.feedback_count: int | None = None

    def add(self, *interactions: Interaction) -> None:
        self.interactions.extend(interactions)

    def _check(self, write: bool = False) -> None:
        if self.fail or (write and self.fail_writes):
            raise StoreError("interaction store unavailable")

    def _matching(self, f: InteractionFilter) -> list[Interaction]:
        found = []
        for i in self.interactions:
            if f.user_id is not None and i.user_id != f.user_id:
                continue
            if f.user_ids is not None and i.user_id not in f.user_ids:
                continue
            if f.target_id is not None and i.target_id != f.target_id:
                continue
            if f.target_ids is not None and i.target_id not in f.target_ids:
                continue
            if f.exclude_user_id is not None and i.user_id == f.exclude_user_id:
                continue
            if f.interaction_types is not None and i.interaction_type not in f.interaction_types:
                continue
            if f.since is not None and i.created_at < f.since:
                continue
            found.append(i)
        found.sort(key=lambda i: i.created_at, reverse=True)
        return found

    async def find_interactions(self, interaction_filter: InteractionFilter) -> list[Interaction]:
        self._check()
        found = self._matching(interaction_filter)
        if interaction_filter.limit is not None:
            found = found[: interaction_filter.limit]
        return found

    async def create_interaction(self, record: Interaction) -> None:
        self._check(write=True)
        self.interactions.append(record)

    async def count_interactions(self, interaction_filter: InteractionFilter) -> int:
        self._check()
        return len(self._matching(interaction_filter))

    async def create_feedback(self, record: FeedbackRecord) -> None:
        self._check(write=True)
        self.feedback.append(record)

    async def count_feedback(self, user_id: str) -> int:
        self._check()
        if self.feedback_count is not None:
            return self.feedback_count
        return sum(1 for r in self.feedback if r.user_id == user_id)


class FakeUserStore(UserStore):
    def __init__(self, following: dict[str, list[str]] | None = None, preferences: dict | None = None):
        self.following = following or {}
        self.preferences = preferences or {}
        self.fail = False

    async def get_preferences(self, user_id: str) -> dict:
        if self.fail:
            raise StoreError("user store unavailable")
        return self.preferences.get(user_id, {})

    async def find_following(self, user_id: str) -> list[str]:
        if self.fail:
            raise StoreError("user store unavailable")
        return list(self.following.get(user_id, []))


class FakeTrendingSource(TrendingSource):
    def __init__(self, topics: list[TrendingTopic] | None = None):
        self.topics = list(topics or [])
        self.calls: list[tuple[int, str]] = []

    async def get_trending_topics(self, limit: int = 10, window: str = "6h") -> list[TrendingTopic]:
        self.calls.append((limit, window))
        return sorted(self.topics, key=lambda t: t.velocity, reverse=True)[:limit]


# ---------------------------------------------------------------------------
# Ephemeral state
# ---------------------------------------------------------------------------

def _glob_to_regex(pattern: str) -> re.Pattern:
    """Redis-style glob: ``*``, ``?``, ``[...]`` and backslash escapes."""
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                out.append("[" + pattern[i + 1:end] + "]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


class FakeCache(Cache):
    def __init__(self):
        self.values: dict[str, bytes] = {}
        self.lists: dict[str, list[bytes]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise StoreError("cache unavailable")

    async def get(self, key: str) -> bytes | None:
        self._check()
        return self.values.get(key)

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._check()
        self.values[key] = value
        self.ttls[key] = ttl_seconds

    async def delete(self, *keys: str) -> None:
        self._check()
        for key in keys:
            self.values.pop(key, None)
            self.lists.pop(key, None)
            self.hashes.pop(key, None)
            self.ttls.pop(key, None)

    async def list_keys(self, pattern: str) -> list[str]:
        self._check()
        regex = _glob_to_regex(pattern)
        keys = set(self.values) | set(self.lists) | set(self.hashes)
        return sorted(k for k in keys if regex.match(k))

    async def push_bounded(self, key: str, value: bytes, max_length: int, ttl_seconds: int) -> None:
        self._check()
        items = [value, *self.lists.get(key, [])]
        self.lists[key] = items[:max_length]
        self.ttls[key] = ttl_seconds

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[bytes]:
        self._check()
        items = self.lists.get(key, [])
        return items[start:] if stop == -1 else items[start:stop + 1]

    async def hash_set(self, key: str, field: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self.hashes.setdefault(key, {})[field] = value
        self.ttls[key] = ttl_seconds


class FakeQueue(BackgroundQueue):
    def __init__(self):
        self.messages: list[tuple[str, dict]] = []
        self.fail = False

    async def enqueue(self, queue_name: str, payload: dict) -> None:
        if self.fail:
            raise StoreError("queue unavailable")
        self.messages.append((queue_name, payload))

    def on(self, queue_name: str) -> list[dict]:
        return [payload for name, payload in self.messages if name == queue_name]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def content_store():
    return FakeContentStore()


@pytest.fixture
def interaction_store():
    return FakeInteractionStore()


@pytest.fixture
def user_store():
    return FakeUserStore()


@pytest.fixture
def trending_source():
    return FakeTrendingSource()


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def queue():
    return FakeQueue()
