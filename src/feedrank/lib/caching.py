"""Best-effort JSON caching on top of a :class:`~feedrank.lib.stores.Cache`.

Cache failures are never fatal: reads degrade to a miss and writes or
invalidations are logged and dropped.
"""

import hashlib
import json
import logging
import re
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from .errors import StoreError
from .stores.base import Cache

logger = logging.getLogger(__name__)

T = TypeVar("T")


def config_hash(config: BaseModel | dict[str, Any]) -> str:
    """Short stable digest of a configuration, for use in cache keys."""
    if isinstance(config, BaseModel):
        payload = config.model_dump(mode="json")
    else:
        payload = config
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha1(encoded).hexdigest()[:16]


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(value: str) -> str:
    """Escape glob metacharacters so *value* matches literally in a key pattern."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


async def read_cached(cache: Cache, key: str, adapter: TypeAdapter[T]) -> T | None:
    try:
        raw = await cache.get(key)
    except StoreError:
        logger.warning("Cache read failed for %s; treating as miss", key, exc_info=True)
        return None
    if raw is None:
        return None
    try:
        return adapter.validate_json(raw)
    except ValidationError:
        logger.warning("Discarding undecodable cache entry %s", key)
        return None


async def write_cached(cache: Cache, key: str, value: T, adapter: TypeAdapter[T], ttl_seconds: int) -> None:
    try:
        await cache.set_with_ttl(key, adapter.dump_json(value), ttl_seconds)
    except StoreError:
        logger.warning("Cache write failed for %s", key, exc_info=True)


async def invalidate_patterns(cache: Cache, patterns: list[str]) -> int:
    """Delete every key matching any of *patterns*; returns the number deleted."""
    deleted = 0
    for pattern in patterns:
        try:
            keys = await cache.list_keys(pattern)
            if keys:
                await cache.delete(*keys)
                deleted += len(keys)
        except StoreError:
            logger.warning("Failed to invalidate cache pattern %s", pattern, exc_info=True)
    return deleted
