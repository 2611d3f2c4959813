"""Redis caching utilities for ledger reads.

Provides a decorator for caching expensive ledger reads (scans, audit
trails, reports) and invalidation helpers for the write paths.  Off unless
``settings.cache_enabled`` is set; every call then goes straight through.

Keys: {namespace}:{prefix}:{function_name}:{args_hash}, or
{namespace}:{key_builder(...)} when a key builder is given.
"""

import functools
import hashlib
import json
import logging
from datetime import date, datetime
from typing import Any, Callable, Optional

import redis
from pydantic import BaseModel

from pharmaledger.config import settings

logger = logging.getLogger(__name__)

# Global Redis connection pool
_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create Redis client connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
    return _redis_client


def close_redis():
    """Close Redis connection (call on shutdown)."""
    global _redis_client
    if _redis_client:
        _redis_client.close()
        _redis_client = None


def cache_key(*args, **kwargs) -> str:
    """Generate a cache key from function arguments.

    Creates a deterministic hash from function name and arguments.
    """
    if not args and not kwargs:
        return "default"

    key_data = json.dumps({"args": args, "kwargs": kwargs}, sort_keys=True)
    return hashlib.md5(key_data.encode()).hexdigest()


def _namespaced(key: str) -> str:
    return f"{settings.cache_namespace}:{key}"


def _serialize(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", by_alias=True)
    if isinstance(result, (list, tuple)):
        return [_serialize(item) for item in result]
    return result


def _restore(value: Any, model: type[BaseModel] | None) -> Any:
    if model is None:
        return value
    if isinstance(value, list):
        return [model.model_validate(item) for item in value]
    return model.model_validate(value)


def cached(
    ttl: int = 300,
    prefix: str = "cache",
    key_builder: Optional[Callable] = None,
    model: type[BaseModel] | None = None,
):
    """Decorator to cache function results in Redis.

    Args:
        ttl: Time-to-live in seconds (default: 300 = 5 minutes)
        prefix: Cache key prefix for namespacing
        key_builder: Custom function to build cache key from args/kwargs
        model: Pydantic model to rebuild cached results with (single or list)

    Example:
        @cached(ttl=settings.cache_ttl_reports, prefix="report", model=ComplianceReport)
        def _report(self, *, start, end, organization_id):
            ...

    Only keyword arguments of simple types go into the generated key;
    positional arguments (``self``, transactions) are skipped.
    Keys do not identify the backing store: one cache namespace
    (``settings.cache_namespace``) must serve exactly one ledger store.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if not settings.cache_enabled:
                return func(*args, **kwargs)

            if key_builder:
                key = _namespaced(key_builder(*args, **kwargs))
            else:
                cache_kwargs = {}
                for k, v in kwargs.items():
                    if k.startswith("_"):
                        continue
                    if isinstance(v, (int, str, bool, float, type(None))):
                        cache_kwargs[k] = v
                    elif isinstance(v, (date, datetime)):
                        cache_kwargs[k] = v.isoformat()
                key_hash = cache_key(**cache_kwargs)
                key = _namespaced(f"{prefix}:{func.__name__}:{key_hash}")

            try:
                redis_client = get_redis()
                cached_value = redis_client.get(key)
            except redis.RedisError as e:
                logger.warning(f"Redis error (falling back to uncached): {e}")
                return func(*args, **kwargs)

            if cached_value:
                logger.debug(f"Cache HIT: {key}")
                return _restore(json.loads(cached_value), model)

            logger.debug(f"Cache MISS: {key}")
            result = func(*args, **kwargs)

            try:
                redis_client.setex(key, ttl, json.dumps(_serialize(result)))
            except redis.RedisError as e:
                logger.warning(f"Redis error (result not cached): {e}")

            return result

        return wrapper

    return decorator


def invalidate_cache(*patterns: str):
    """Invalidate cache keys matching one or more patterns.

    Patterns are relative to the cache namespace (e.g. "batches:*",
    "batch:B1").  A no-op when caching is disabled.
    """
    if not settings.cache_enabled:
        return
    try:
        redis_client = get_redis()
        keys = []
        for pattern in patterns:
            keys.extend(redis_client.scan_iter(match=_namespaced(pattern)))

        if keys:
            redis_client.delete(*keys)
            logger.info(f"Invalidated {len(keys)} cache keys matching {', '.join(patterns)}")
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate cache: {e}")
