"""Key/value cache fronting hot token lookups and attempt counters."""

from __future__ import annotations

import json
import logging
import time
from threading import Lock
from typing import Any, Callable, Final

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .domain.errors import CacheUnavailable

logger = logging.getLogger(__name__)


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Final = _Miss()


class RedisCache:
    """Cache backed by Redis; eviction relies on per-key ``EX`` expiry."""

    def __init__(self, client: Redis, *, key_prefix: str = "accessgate") -> None:
        """Store the Redis client and the namespace applied to every key."""
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def set(self, key: str, value: Any, ttl: int) -> None:
        """Store ``value`` as JSON for ``ttl`` seconds."""
        try:
            self._client.set(self._key(key), json.dumps(value), ex=max(1, int(ttl)))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise CacheUnavailable(f"cache set failed: {exc}") from exc

    def get(self, key: str) -> Any:
        """Return the decoded value or :data:`MISS`."""
        try:
            raw = self._client.get(self._key(key))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise CacheUnavailable(f"cache get failed: {exc}") from exc
        if raw is None:
            return MISS
        return json.loads(raw)

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise CacheUnavailable(f"cache delete failed: {exc}") from exc

    def incr(self, key: str, ttl: int) -> int:
        """Increment a counter, starting its expiry window on first use."""
        redis_key = self._key(key)
        try:
            count = int(self._client.incr(redis_key))
            if count == 1:
                self._client.expire(redis_key, max(1, int(ttl)))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise CacheUnavailable(f"cache incr failed: {exc}") from exc
        return count

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise CacheUnavailable(f"cache ping failed: {exc}") from exc


class MemoryCache:
    """Thread-safe in-process cache for single-process development.

    Entries expire lazily when read. Instances are not shared between
    processes, so a logout served by one worker is not seen by another
    worker's cache until the durable store is consulted.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialise the entry map and its lock."""
        self._entries: dict[str, tuple[float, Any]] = {}
        self._clock = clock
        self._lock = Lock()

    def set(self, key: str, value: Any, ttl: int) -> None:
        # round-trip through JSON so callers see the same types as with Redis
        encoded = json.dumps(value)
        with self._lock:
            self._entries[key] = (self._clock() + max(1, int(ttl)), encoded)

    def get(self, key: str) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISS
            expires_at, encoded = entry
            if expires_at <= now:
                del self._entries[key]
                return MISS
        return json.loads(encoded)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def incr(self, key: str, ttl: int) -> int:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[0] <= now:
                count = 1
                expires_at = now + max(1, int(ttl))
            else:
                expires_at, encoded = entry
                count = int(json.loads(encoded)) + 1
            self._entries[key] = (expires_at, json.dumps(count))
        return count

    def ping(self) -> bool:
        return True


def build_cache(backend: str, redis_url: str) -> RedisCache | MemoryCache:
    """Instantiate the configured cache backend, preferring Redis when available."""
    if backend == "redis" and redis_url:
        client = Redis.from_url(redis_url, socket_timeout=2, socket_connect_timeout=2)
        cache = RedisCache(client)
        try:
            cache.ping()
        except CacheUnavailable as exc:
            # the cache is an optimisation: start anyway, lookups degrade to the store
            logger.warning("redis cache not reachable at startup: %s", exc)
        else:
            logger.info("cache configured for redis backend at %s", redis_url)
        return cache

    logger.info("cache using in-memory backend")
    return MemoryCache()
