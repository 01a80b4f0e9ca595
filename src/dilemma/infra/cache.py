"""
Cache adapters for the scheduler's side effects.

- MemoryCache: thread-safe in-process cache (tests, single-process runs)
- RedisCache: shared cache used by the API nodes

Keys follow the layout of dilemma.scheduler.ports.CacheKeys.
"""

import fnmatch
import json
import logging
import threading
import time
from typing import Any, Optional

import redis


logger = logging.getLogger(__name__)


SCAN_BATCH_SIZE = 500

# Seconds before a Redis connect or command gives up
REDIS_SOCKET_TIMEOUT_SECONDS = 5.0


class MemoryCache:
    """
    Dict-backed cache with TTL and glob-style pattern invalidation.

    Expired entries are dropped lazily on read.
    """

    def __init__(self):
        self._data: dict[str, tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None

            value, expires_at = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._data[key]
                return None

            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None if ttl_seconds is None else time.monotonic() + ttl_seconds
        with self._lock:
            self._data[key] = (value, expires_at)

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def invalidate_pattern(self, pattern: str) -> None:
        with self._lock:
            matching = [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]
            for key in matching:
                del self._data[key]

        logger.debug(f"Invalidated {len(matching)} keys matching {pattern}")

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class RedisCache:
    """
    Redis-backed cache.

    Values are stored as JSON. Pattern invalidation walks the key space with
    SCAN rather than KEYS so a large cache doesn't block the server.

    Connection errors propagate: a Redis outage fails the job and the retry
    policy takes over.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(
            redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
                socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            )
        )

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            # Already expired
            self.client.delete(key)
            return

        serialized = json.dumps(value)
        if ttl_seconds is None:
            self.client.set(key, serialized)
        else:
            self.client.setex(key, ttl_seconds, serialized)

    def invalidate(self, *keys: str) -> None:
        if keys:
            self.client.delete(*keys)

    def invalidate_pattern(self, pattern: str) -> None:
        batch = []
        deleted = 0

        for key in self.client.scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
            batch.append(key)
            if len(batch) >= SCAN_BATCH_SIZE:
                deleted += self.client.delete(*batch)
                batch = []

        if batch:
            deleted += self.client.delete(*batch)

        logger.debug(f"Invalidated {deleted} keys matching {pattern}")


def build_cache(backend: str, redis_url: str):
    """
    Create the cache adapter named by configuration.

    Args:
        backend: "memory" or "redis"
        redis_url: Connection URL used by the redis backend
    """
    if backend == "redis":
        logger.info(f"Using Redis cache at {redis_url}")
        return RedisCache.from_url(redis_url)

    if backend != "memory":
        raise ValueError(f"Unknown cache backend: {backend}")

    logger.info("Using in-memory cache")
    return MemoryCache()
