"""Tests for the Elasticsearch-backed stores."""

from datetime import datetime, timezone

import pytest

from ...models import FeedbackRecord, FeedbackType, Interaction, InteractionType
from ..errors import StoreError
from .base import InteractionFilter, PostFilter
from .elasticsearch import (
    ElasticsearchContentStore,
    ElasticsearchInteractionStore,
    ElasticsearchTrendingSource,
    ElasticsearchUserStore,
    build_interaction_query,
    build_post_query,
    unwrap_es_response,
)

CREATED = "2026-01-15T11:00:00+00:00"


class FakeEs:
    """Configurable fake Elasticsearch client for unit tests."""

    def __init__(self, responses: dict | None = None, count: int = 0, fail: bool = False):
        # Map of index -> response dict
        self._responses = responses or {}
        self._default = {"hits": {"hits": []}}
        self._count = count
        self._fail = fail
        self.calls: list[dict] = []
        self.indexed: list[dict] = []

    async def search(self, *, index=None, query=None, size=None, sort=None, _source=None, **kwargs):
        self.calls.append({"index": index, "query": query, "size": size, "sort": sort, "_source": _source})
        if self._fail:
            raise ConnectionError("cluster unreachable")
        return self._responses.get(index, self._default)

    async def count(self, *, index=None, query=None):
        self.calls.append({"index": index, "query": query})
        return {"count": self._count}

    async def index(self, *, index=None, id=None, document=None):
        if self._fail:
            raise ConnectionError("cluster unreachable")
        self.indexed.append({"index": index, "id": id, "document": document})


def _hits(*sources):
    return {"hits": {"hits": [{"_source": s} for s in sources]}}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestUnwrap:
    def test_dict_passes_through(self):
        assert unwrap_es_response({"a": 1}) == {"a": 1}

    def test_unexpected_type_raises(self):
        with pytest.raises(StoreError):
            unwrap_es_response(["nope"])


class TestBuildPostQuery:
    def test_filters(self):
        since = datetime(2026, 1, 14, tzinfo=timezone.utc)
        query = build_post_query(
            PostFilter(ids=["p1"], author_ids=["a1"], exclude_author_ids=["a2"], since=since)
        )
        bool_q = query["bool"]
        assert {"terms": {"id": ["p1"]}} in bool_q["filter"]
        assert {"terms": {"author_id": ["a1"]}} in bool_q["filter"]
        assert {"range": {"created_at": {"gte": since.isoformat()}}} in bool_q["filter"]
        assert bool_q["must_not"] == [{"terms": {"author_id": ["a2"]}}]
        assert "must" not in bool_q

    def test_knn_for_vector_retrieval(self):
        query = build_post_query(PostFilter(near_vector=[0.1, 0.2], limit=20))
        knn = query["bool"]["must"]["knn"]
        assert knn["field"] == "content_embedding"
        assert knn["k"] == 20
        assert knn["num_candidates"] == 200

    def test_match_for_text_terms(self):
        query = build_post_query(PostFilter(text_terms=["climate", "policy"]))
        assert query["bool"]["must"] == {
            "match": {"content": {"query": "climate policy", "operator": "or"}}
        }


def test_build_interaction_query():
    query = build_interaction_query(
        InteractionFilter(
            user_id="u1",
            target_ids=["p1", "p2"],
            interaction_types=[InteractionType.LIKE],
            exclude_user_id="u2",
        )
    )
    assert {"term": {"user_id": "u1"}} in query["bool"]["filter"]
    assert {"terms": {"target_id": ["p1", "p2"]}} in query["bool"]["filter"]
    assert {"terms": {"interaction_type": ["LIKE"]}} in query["bool"]["filter"]
    assert query["bool"]["must_not"] == [{"term": {"user_id": "u2"}}]


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class TestContentStore:
    @pytest.mark.asyncio
    async def test_parses_posts_and_sorts_by_recency(self):
        es = FakeEs(responses={
            "posts": _hits(
                {"id": "p1", "author_id": "a1", "content": "hello", "created_at": CREATED},
                {"id": "p2", "author_id": "a2", "created_at": CREATED, "engagement": {"likes": 3}},
            )
        })
        posts = await ElasticsearchContentStore(es).find_posts(PostFilter(limit=10))
        assert [p.id for p in posts] == ["p1", "p2"]
        assert posts[1].engagement.likes == 3
        assert es.calls[0]["sort"] == [{"created_at": "desc"}]
        assert es.calls[0]["size"] == 10

    @pytest.mark.asyncio
    async def test_relevance_order_for_vector_queries(self):
        es = FakeEs()
        await ElasticsearchContentStore(es).find_posts(PostFilter(near_vector=[1.0]))
        assert es.calls[0]["sort"] is None

    @pytest.mark.asyncio
    async def test_skips_malformed_documents(self):
        es = FakeEs(responses={
            "posts": _hits(
                {"id": "p1", "author_id": "a1", "created_at": CREATED},
                {"id": "broken"},
            )
        })
        posts = await ElasticsearchContentStore(es).find_posts(PostFilter())
        assert [p.id for p in posts] == ["p1"]

    @pytest.mark.asyncio
    async def test_client_errors_become_store_errors(self):
        with pytest.raises(StoreError):
            await ElasticsearchContentStore(FakeEs(fail=True)).find_posts(PostFilter())


class TestInteractionStore:
    @pytest.mark.asyncio
    async def test_find_uses_default_limit(self):
        es = FakeEs(responses={
            "interactions": _hits(
                {"id": "i1", "user_id": "u1", "target_id": "p1", "interaction_type": "LIKE", "created_at": CREATED}
            )
        })
        found = await ElasticsearchInteractionStore(es).find_interactions(InteractionFilter(user_id="u1"))
        assert found[0].interaction_type is InteractionType.LIKE
        assert es.calls[0]["size"] == 500

    @pytest.mark.asyncio
    async def test_create_and_count(self):
        es = FakeEs(count=7)
        store = ElasticsearchInteractionStore(es)
        record = Interaction(id="i1", user_id="u1", target_id="p1", interaction_type=InteractionType.REPLY)
        await store.create_interaction(record)
        assert es.indexed[0]["index"] == "interactions"
        assert es.indexed[0]["document"]["interaction_type"] == "REPLY"
        assert await store.count_interactions(InteractionFilter(user_id="u1")) == 7

    @pytest.mark.asyncio
    async def test_feedback_goes_to_its_own_index(self):
        es = FakeEs(count=3)
        store = ElasticsearchInteractionStore(es)
        await store.create_feedback(
            FeedbackRecord(id="f1", user_id="u1", post_id="p1", interaction_type=FeedbackType.SKIP)
        )
        assert es.indexed[0]["index"] == "feed_feedback"
        assert await store.count_feedback("u1") == 3
        assert es.calls[-1] == {"index": "feed_feedback", "query": {"term": {"user_id": "u1"}}}

    @pytest.mark.asyncio
    async def test_write_failure_raises_store_error(self):
        store = ElasticsearchInteractionStore(FakeEs(fail=True))
        with pytest.raises(StoreError):
            await store.create_interaction(
                Interaction(id="i1", user_id="u1", target_id="p1", interaction_type=InteractionType.VIEW)
            )


class TestUserStore:
    @pytest.mark.asyncio
    async def test_preferences(self):
        es = FakeEs(responses={"users": _hits({"preferences": {"interest_embedding": [0.1]}})})
        assert await ElasticsearchUserStore(es).get_preferences("u1") == {"interest_embedding": [0.1]}

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_preferences(self):
        assert await ElasticsearchUserStore(FakeEs()).get_preferences("nobody") == {}

    @pytest.mark.asyncio
    async def test_following(self):
        es = FakeEs(responses={"follows": _hits({"followee_id": "a1"}, {}, {"followee_id": "a2"})})
        assert await ElasticsearchUserStore(es).find_following("u1") == ["a1", "a2"]


class TestTrendingSource:
    @pytest.mark.asyncio
    async def test_topics(self):
        es = FakeEs(responses={
            "trends": _hits(
                {"topic": "climate", "velocity": 12.5, "sources": {"post_count": 40}},
                {"topic": "", "velocity": 3},
                {"topic": "rust", "velocity": -1},
            )
        })
        topics = await ElasticsearchTrendingSource(es).get_trending_topics(limit=5, window="1h")
        assert [(t.topic, t.velocity, t.post_count) for t in topics] == [
            ("climate", 12.5, 40),
            ("rust", 0.0, 0),
        ]
        call = es.calls[0]
        assert call["sort"] == [{"velocity": "desc"}]
        assert {"range": {"created_at": {"gte": "now-1h"}}} in call["query"]["bool"]["filter"]
