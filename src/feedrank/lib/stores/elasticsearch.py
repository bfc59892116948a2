"""Elasticsearch-backed stores.

Index layout:

* ``posts``          – one document per post (see :class:`~feedrank.models.Post`),
  ``content_embedding`` mapped as a ``dense_vector``.
* ``interactions``   – raw interaction events.
* ``feed_feedback``  – feedback recorded against served feeds.
* ``users``          – per-user documents with a ``preferences`` object.
* ``follows``        – ``follower_id`` → ``followee_id`` edges.
* ``trends``         – trending topics with ``velocity`` and ``is_active``.
"""

import logging
from typing import Any

from elastic_transport import ObjectApiResponse
from pydantic import ValidationError

from ...models import FeedbackRecord, Interaction, Post, TrendingTopic
from ..errors import StoreError
from .base import (
    ContentStore,
    InteractionFilter,
    InteractionStore,
    PostFilter,
    TrendingSource,
    TrendingWindow,
    UserStore,
)

logger = logging.getLogger(__name__)

POSTS_INDEX = "posts"
INTERACTIONS_INDEX = "interactions"
FEEDBACK_INDEX = "feed_feedback"
USERS_INDEX = "users"
FOLLOWS_INDEX = "follows"
TRENDS_INDEX = "trends"

# Upper bound for unbounded interaction lookups.
DEFAULT_INTERACTION_LIMIT = 500
MAX_FOLLOWING = 1000


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def unwrap_es_response(resp) -> dict:
    """Unwrap an Elasticsearch response, handling both ObjectApiResponse and dict.

    Raises :class:`StoreError` if the response type is unexpected.
    """
    if isinstance(resp, ObjectApiResponse):
        return resp.body
    elif isinstance(resp, dict):
        return resp
    else:
        logger.error("Unexpected Elasticsearch response type: %s", type(resp))
        raise StoreError("Invalid Elasticsearch response")


def hit_sources(data: dict) -> list[dict]:
    return [hit.get("_source") or {} for hit in data.get("hits", {}).get("hits", [])]


async def es_search(es, index: str, **kwargs) -> dict:
    # The client raises several transport/API exception types; any of them
    # means the store is unavailable for this request.
    try:
        resp = await es.search(index=index, **kwargs)
    except Exception as exc:
        raise StoreError(f"Elasticsearch search on '{index}' failed") from exc
    return unwrap_es_response(resp)


async def es_count(es, index: str, query: dict) -> int:
    try:
        resp = await es.count(index=index, query=query)
    except Exception as exc:
        raise StoreError(f"Elasticsearch count on '{index}' failed") from exc
    return int(unwrap_es_response(resp).get("count", 0))


async def es_index(es, index: str, doc_id: str, document: dict) -> None:
    try:
        await es.index(index=index, id=doc_id, document=document)
    except Exception as exc:
        raise StoreError(f"Elasticsearch write to '{index}' failed") from exc


# ---------------------------------------------------------------------------
# Query builders
# ---------------------------------------------------------------------------

def build_post_query(post_filter: PostFilter) -> dict:
    """Translate a :class:`PostFilter` into an Elasticsearch query."""
    filters: list[dict] = []
    must_not: list[dict] = []

    if post_filter.ids:
        filters.append({"terms": {"id": post_filter.ids}})
    if post_filter.author_ids:
        filters.append({"terms": {"author_id": post_filter.author_ids}})
    if post_filter.exclude_author_ids:
        must_not.append({"terms": {"author_id": post_filter.exclude_author_ids}})
    if post_filter.since is not None:
        filters.append({"range": {"created_at": {"gte": post_filter.since.isoformat()}}})

    bool_query: dict[str, Any] = {"filter": filters}
    if must_not:
        bool_query["must_not"] = must_not

    if post_filter.near_vector:
        bool_query["must"] = {
            "knn": {
                "field": "content_embedding",
                "query_vector": post_filter.near_vector,
                "k": post_filter.limit,
                "num_candidates": max(100, post_filter.limit * 10),
            }
        }
    elif post_filter.text_terms:
        bool_query["must"] = {
            "match": {"content": {"query": " ".join(post_filter.text_terms), "operator": "or"}}
        }

    return {"bool": bool_query}


def build_interaction_query(interaction_filter: InteractionFilter) -> dict:
    filters: list[dict] = []
    must_not: list[dict] = []

    if interaction_filter.user_id is not None:
        filters.append({"term": {"user_id": interaction_filter.user_id}})
    if interaction_filter.user_ids:
        filters.append({"terms": {"user_id": interaction_filter.user_ids}})
    if interaction_filter.target_id is not None:
        filters.append({"term": {"target_id": interaction_filter.target_id}})
    if interaction_filter.target_ids:
        filters.append({"terms": {"target_id": interaction_filter.target_ids}})
    if interaction_filter.interaction_types:
        filters.append(
            {"terms": {"interaction_type": [t.value for t in interaction_filter.interaction_types]}}
        )
    if interaction_filter.since is not None:
        filters.append({"range": {"created_at": {"gte": interaction_filter.since.isoformat()}}})
    if interaction_filter.exclude_user_id is not None:
        must_not.append({"term": {"user_id": interaction_filter.exclude_user_id}})

    bool_query: dict[str, Any] = {"filter": filters}
    if must_not:
        bool_query["must_not"] = must_not
    return {"bool": bool_query}


def _parse_all(model, sources: list[dict], kind: str) -> list:
    parsed = []
    for src in sources:
        try:
            parsed.append(model.model_validate(src))
        except ValidationError:
            logger.warning("Skipping malformed %s document: %r", kind, src.get("id"))
    return parsed


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class ElasticsearchContentStore(ContentStore):
    def __init__(self, es):
        self._es = es

    async def find_posts(self, post_filter: PostFilter) -> list[Post]:
        kwargs: dict[str, Any] = {"query": build_post_query(post_filter), "size": post_filter.limit}
        if not post_filter.near_vector and not post_filter.text_terms:
            kwargs["sort"] = [{"created_at": "desc"}]
        data = await es_search(self._es, POSTS_INDEX, **kwargs)
        return _parse_all(Post, hit_sources(data), "post")


class ElasticsearchInteractionStore(InteractionStore):
    def __init__(self, es):
        self._es = es

    async def find_interactions(self, interaction_filter: InteractionFilter) -> list[Interaction]:
        data = await es_search(
            self._es,
            INTERACTIONS_INDEX,
            query=build_interaction_query(interaction_filter),
            size=interaction_filter.limit or DEFAULT_INTERACTION_LIMIT,
            sort=[{"created_at": "desc"}],
        )
        return _parse_all(Interaction, hit_sources(data), "interaction")

    async def create_interaction(self, record: Interaction) -> None:
        await es_index(self._es, INTERACTIONS_INDEX, record.id, record.model_dump(mode="json"))

    async def count_interactions(self, interaction_filter: InteractionFilter) -> int:
        return await es_count(self._es, INTERACTIONS_INDEX, build_interaction_query(interaction_filter))

    async def create_feedback(self, record: FeedbackRecord) -> None:
        await es_index(self._es, FEEDBACK_INDEX, record.id, record.model_dump(mode="json"))

    async def count_feedback(self, user_id: str) -> int:
        return await es_count(self._es, FEEDBACK_INDEX, {"term": {"user_id": user_id}})


class ElasticsearchUserStore(UserStore):
    def __init__(self, es):
        self._es = es

    async def get_preferences(self, user_id: str) -> dict[str, Any]:
        data = await es_search(
            self._es,
            USERS_INDEX,
            query={"term": {"id": user_id}},
            size=1,
            _source=["preferences"],
        )
        sources = hit_sources(data)
        if not sources:
            return {}
        prefs = sources[0].get("preferences")
        return prefs if isinstance(prefs, dict) else {}

    async def find_following(self, user_id: str) -> list[str]:
        data = await es_search(
            self._es,
            FOLLOWS_INDEX,
            query={"term": {"follower_id": user_id}},
            size=MAX_FOLLOWING,
            _source=["followee_id"],
        )
        return [src["followee_id"] for src in hit_sources(data) if src.get("followee_id")]


class ElasticsearchTrendingSource(TrendingSource):
    def __init__(self, es):
        self._es = es

    async def get_trending_topics(
        self,
        limit: int = 10,
        window: TrendingWindow = "6h",
    ) -> list[TrendingTopic]:
        query = {
            "bool": {
                "filter": [
                    {"term": {"is_active": True}},
                    {"range": {"created_at": {"gte": f"now-{window}"}}},
                ]
            }
        }
        data = await es_search(
            self._es,
            TRENDS_INDEX,
            query=query,
            size=limit,
            sort=[{"velocity": "desc"}],
        )
        topics = []
        for src in hit_sources(data):
            if not src.get("topic"):
                continue
            sources_obj = src.get("sources") if isinstance(src.get("sources"), dict) else {}
            topics.append(
                TrendingTopic(
                    topic=src["topic"],
                    velocity=max(0.0, float(src.get("velocity") or 0.0)),
                    post_count=int(sources_obj.get("post_count") or 0),
                )
            )
        return topics
