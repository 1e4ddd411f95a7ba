"""Unified caching interface with Redis / in-memory swap.

Provides a simple get/set/delete API. When REDIS_URL is configured
and reachable, uses Redis; otherwise uses the in-memory TTLCache from
ai_resilience.py. Holds the leaderboard snapshot and cached LLM responses.

Usage:
    from cache_backend import init_cache, get_cache
    init_cache(app)          # called once in create_app()
    cache = get_cache()      # module-level accessor
    cache.set("key", value, ttl=30)
    value = cache.get("key")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import redis

from ai_resilience import TTLCache

logger = logging.getLogger(__name__)

LEADERBOARD_KEY_PREFIX = "streak:leaderboard:"


# ── Protocol ───────────────────────────────────────────────

class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int = 300) -> None: ...
    def delete(self, key: str) -> None: ...
    def delete_prefix(self, prefix: str) -> None: ...
    def cleanup(self) -> int: ...


# ── In-Memory Implementation ──────────────────────────────

class InMemoryCache:
    """JSON-encoding wrapper around TTLCache."""

    def __init__(self) -> None:
        self._store = TTLCache()

    def get(self, key: str) -> Any | None:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return raw

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        raw = json.dumps(value) if not isinstance(value, str) else value
        self._store.set(key, raw, ttl)

    def delete(self, key: str) -> None:
        self._store.delete(key)

    def delete_prefix(self, prefix: str) -> None:
        self._store.delete_prefix(prefix)

    def cleanup(self) -> int:
        return self._store.cleanup()


# ── Redis Implementation ──────────────────────────────────

class RedisCache:
    """Wraps redis.Redis with graceful error handling."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def get(self, key: str) -> Any | None:
        try:
            raw = self._redis.get(key)
            if raw is None:
                return None
            try:
                return json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                return raw.decode() if isinstance(raw, bytes) else raw
        except redis.RedisError as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        try:
            raw = json.dumps(value) if not isinstance(value, str) else value
            self._redis.setex(key, ttl, raw)
        except redis.RedisError as e:
            logger.warning("Redis SET error (key=%s): %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(key)
        except redis.RedisError as e:
            logger.warning("Redis DELETE error (key=%s): %s", key, e)

    def delete_prefix(self, prefix: str) -> None:
        try:
            for key in self._redis.scan_iter(match=f"{prefix}*"):
                self._redis.delete(key)
        except redis.RedisError as e:
            logger.warning("Redis DELETE prefix error (prefix=%s): %s", prefix, e)

    def cleanup(self) -> int:
        # Redis handles expiry natively
        return 0


# ── Module-level singleton ────────────────────────────────

_cache: CacheBackend | None = None


def init_cache(app) -> None:
    """Initialize the cache backend. Call once from create_app()."""
    global _cache

    redis_url = app.config.get("REDIS_URL", "")
    if redis_url:
        try:
            client = redis.Redis.from_url(redis_url, decode_responses=False)
            client.ping()
            _cache = RedisCache(client)
            app.logger.info("Cache backend: Redis (%s)", redis_url)
            return
        except redis.RedisError as e:
            app.logger.warning("Redis connection failed (%s), using in-memory cache.", e)

    _cache = InMemoryCache()
    app.logger.info("Cache backend: in-memory (TTLCache)")


def get_cache() -> CacheBackend:
    """Return the active cache backend. Lazily initializes if needed."""
    global _cache
    if _cache is None:
        _cache = InMemoryCache()
    return _cache


def invalidate_leaderboard() -> None:
    get_cache().delete_prefix(LEADERBOARD_KEY_PREFIX)
