"""Redis-backed cache and background queue.

Key families written through :class:`RedisCache`:
  • ``feed:{user_id}:{config_hash}``      – serialized ranked feed (5 min)
  • ``cf_*`` / ``user_sim:*`` / ``item_sim:*`` – collaborative-filtering state
  • ``interest_vector:{user_id}``        – derived interest embedding
  • ``user_prefs:{user_id}``             – LIST of recent feedback events
  • ``experiments:{name}``               – HASH user_id → variant

:class:`RedisQueue` pushes JSON payloads onto Redis lists consumed by
external workers (``cf_updates``, ``model_training:queue``, ``feed_logs``).
"""
import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..errors import StoreError
from .base import BackgroundQueue, Cache

logger = logging.getLogger(__name__)


def create_redis(url: str) -> aioredis.Redis:
    # Values are raw bytes (JSON produced by pydantic); keys are decoded on read.
    return aioredis.Redis.from_url(url, decode_responses=False)


def _key_str(key) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else str(key)


class RedisCache(Cache):
    def __init__(self, client: aioredis.Redis):
        self._redis = client

    async def get(self, key: str) -> bytes | None:
        try:
            return await self._redis.get(key)
        except RedisError as exc:
            raise StoreError(f"Redis GET {key} failed") from exc

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise StoreError(f"Redis SET {key} failed") from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
        except RedisError as exc:
            raise StoreError("Redis DEL failed") from exc

    async def list_keys(self, pattern: str) -> list[str]:
        # SCAN rather than KEYS so invalidation never blocks the server.
        try:
            return [_key_str(k) async for k in self._redis.scan_iter(match=pattern, count=500)]
        except RedisError as exc:
            raise StoreError(f"Redis SCAN {pattern} failed") from exc

    async def push_bounded(self, key: str, value: bytes, max_length: int, ttl_seconds: int) -> None:
        try:
            pipe = self._redis.pipeline()
            pipe.lpush(key, value)
            pipe.ltrim(key, 0, max_length - 1)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()
        except RedisError as exc:
            raise StoreError(f"Redis LPUSH {key} failed") from exc

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[bytes]:
        try:
            return await self._redis.lrange(key, start, stop)
        except RedisError as exc:
            raise StoreError(f"Redis LRANGE {key} failed") from exc

    async def hash_set(self, key: str, field: str, value: str, ttl_seconds: int) -> None:
        try:
            pipe = self._redis.pipeline()
            pipe.hset(key, field, value)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()
        except RedisError as exc:
            raise StoreError(f"Redis HSET {key} failed") from exc


class RedisQueue(BackgroundQueue):
    def __init__(self, client: aioredis.Redis):
        self._redis = client

    async def enqueue(self, queue_name: str, payload: dict[str, Any]) -> None:
        try:
            await self._redis.lpush(queue_name, json.dumps(payload, default=str))
        except RedisError as exc:
            raise StoreError(f"Redis enqueue on {queue_name} failed") from exc
