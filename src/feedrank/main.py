import logging
from contextlib import asynccontextmanager

from elasticsearch import AsyncElasticsearch
from fastapi import FastAPI

from .config import Settings, get_settings
from .lib.background import BackgroundTasks
from .lib.collaborative.engine import CollaborativeFilteringEngine
from .lib.ranking.ranker import HybridFeedRanker
from .lib.stores.elasticsearch import (
    ElasticsearchContentStore,
    ElasticsearchInteractionStore,
    ElasticsearchTrendingSource,
    ElasticsearchUserStore,
)
from .lib.stores.redis import RedisCache, RedisQueue, create_redis
from .routers import feed, health, recommendations
from .security import RequireApiKey

logger = logging.getLogger(__name__)


def build_services(settings: Settings, es, redis_client) -> tuple[CollaborativeFilteringEngine, HybridFeedRanker]:
    """Wire the engines to Elasticsearch and Redis."""
    content = ElasticsearchContentStore(es)
    interactions = ElasticsearchInteractionStore(es)
    cache = RedisCache(redis_client)
    queue = RedisQueue(redis_client)
    background = BackgroundTasks()

    cf_engine = CollaborativeFilteringEngine(
        interactions,
        content,
        cache,
        queue,
        {"realtime_updates": settings.realtime_cf_updates},
        background=background,
    )
    ranker = HybridFeedRanker(
        content,
        interactions,
        ElasticsearchUserStore(es),
        cache,
        ElasticsearchTrendingSource(es),
        queue,
        affinity=cf_engine.affinity_for,
        candidate_timeout=settings.candidate_timeout_seconds,
        background=background,
    )
    return cf_engine, ranker


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Connecting to Elasticsearch at %s and Redis", settings.elasticsearch_url)

    es = AsyncElasticsearch(settings.elasticsearch_url, api_key=settings.elasticsearch_api_key)
    redis_client = create_redis(settings.redis_url)
    app.state.es = es
    app.state.cf_engine, app.state.ranker = build_services(settings, es, redis_client)
    yield

    logger.info("Shutting down; waiting for background tasks")
    await app.state.ranker.background.drain()
    await redis_client.aclose()
    await es.close()


app = FastAPI(
    title="feedrank",
    description="Personalized feed ranking and collaborative-filtering recommendations",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(feed.router)
app.include_router(recommendations.router)


@app.get("/")
async def root(_: RequireApiKey):
    return {"message": "feedrank"}
