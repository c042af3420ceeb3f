"""
Read-through cache for GET responses.

Entries are keyed by the exact request path plus raw query string, live for a
fixed TTL and are all dropped at once whenever content changes. No per-entry
invalidation exists: any mutation flushes the whole cache.

Every flush bumps a generation counter. A handler reads generation() before
querying and passes it to set(); the body is discarded if a flush happened in
between, so a response built from pre-flush data is never stored.

Two implementations:
- ResponseCache: in-memory, per process
- RedisResponseCache: shared across API instances

Use create_response_cache() to get the configured implementation. The cache is
created by the app at startup and stored on app.state; there is no module-level
instance.
"""

import json
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from api.metrics import RESPONSE_CACHE_REQUESTS_TOTAL

T = TypeVar("T")

logger = logging.getLogger(__name__)


def cache_key_for(request) -> str:
    """Build the cache key for a request: path plus the raw query string, if any."""
    query = request.url.query
    if query:
        return f"{request.url.path}?{query}"
    return request.url.path


def _record_lookup(hit: bool) -> None:
    RESPONSE_CACHE_REQUESTS_TOTAL.labels(result="hit" if hit else "miss").inc()


class ResponseCache:
    """
    In-memory response cache with TTL.

    Each worker process keeps its own entries. Use RedisResponseCache when
    several API processes must observe the same flushes.
    """

    CLEANUP_PROBABILITY = 0.01  # 1% chance of cleanup on each set

    def __init__(self, ttl_seconds: int = 600, enabled: bool = True, max_size: int = 1000):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._ttl = ttl_seconds
        self._enabled = enabled
        self._max_size = max_size
        self._generation = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        """Return the cached body for key, or None if absent or expired."""
        if not self._enabled:
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and time.time() - entry["stored_at"] > self._ttl:
                del self._entries[key]
                entry = None

        _record_lookup(entry is not None)
        return None if entry is None else entry["body"]

    def generation(self) -> int:
        """Number of flushes so far."""
        return self._generation

    def set(self, key: str, value: Any, generation: Optional[int] = None) -> None:
        """Store value, unless a flush happened since generation was read."""
        if not self._enabled:
            return

        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"Skipping stale cache write for {key}")
                return

            if random.random() < self.CLEANUP_PROBABILITY:
                self._remove_expired()

            if key not in self._entries and len(self._entries) >= self._max_size:
                self._remove_expired()
                # Still full: drop the oldest 10%
                if len(self._entries) >= self._max_size:
                    oldest = sorted(self._entries.items(), key=lambda item: item[1]["stored_at"])
                    for stale_key, _ in oldest[: max(1, len(oldest) // 10)]:
                        del self._entries[stale_key]

            self._entries[key] = {"body": value, "stored_at": time.time()}

    def flush(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._generation += 1
            count = len(self._entries)
            self._entries.clear()
        if count:
            logger.debug(f"Response cache flushed ({count} entries)")

    def cleanup_expired(self) -> int:
        """Remove expired entries and return how many were removed."""
        if not self._enabled:
            return 0
        with self._lock:
            return self._remove_expired()

    def _remove_expired(self) -> int:
        now = time.time()
        expired = [key for key, entry in self._entries.items() if now - entry["stored_at"] > self._ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "ttl_seconds": self._ttl,
            "entry_count": len(self._entries),
            "max_size": self._max_size,
            "backend": "memory",
        }


class RedisResponseCache:
    """
    Redis-backed response cache shared by all API instances.

    Bodies are stored as JSON under a key prefix with SETEX. A flush scans and
    deletes every key under the prefix. Redis errors degrade to cache misses.
    """

    CACHE_KEY_PREFIX = "pulse:response:"
    # Outside the prefix so flush() does not delete it
    GENERATION_KEY = "pulse:response-generation"

    def __init__(self, redis_url: str, ttl_seconds: int = 600, enabled: bool = True):
        self._redis_url = redis_url
        self._ttl = ttl_seconds
        self._enabled = enabled
        self._client: Optional[Any] = None
        self._connection_failed = False

        if enabled:
            self._connect()

    def _connect(self) -> None:
        try:
            import redis

            self._client = redis.Redis.from_url(
                self._redis_url,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
                decode_responses=True,
            )
            self._client.ping()
            logger.info(f"Redis response cache connected: {self._redis_url.split('@')[-1]}")
        except Exception as e:
            logger.warning(f"Redis response cache connection failed: {e}")
            self._client = None
            self._connection_failed = True

    def _full_key(self, key: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{key}"

    def _safe_redis_call(
        self,
        operation: Callable[[], T],
        operation_name: str,
        fallback: Optional[T] = None,
    ) -> Optional[T]:
        if not self._enabled or self._client is None:
            return fallback
        try:
            return operation()
        except Exception as e:
            logger.warning(f"Redis response cache {operation_name} failed: {e}")
            return fallback

    def _scan_keys(self):
        cursor = 0
        while True:
            cursor, keys = self._client.scan(cursor, match=f"{self.CACHE_KEY_PREFIX}*", count=100)
            if keys:
                yield keys
            if cursor == 0:
                break

    def get(self, key: str) -> Optional[Any]:
        def operation():
            raw = self._client.get(self._full_key(key))
            return None if raw is None else json.loads(raw)

        body = self._safe_redis_call(operation, "get")
        if self._enabled:
            _record_lookup(body is not None)
        return body

    def generation(self) -> Optional[int]:
        """Flush counter shared by all instances; None when Redis is unavailable."""
        return self._safe_redis_call(lambda: int(self._client.get(self.GENERATION_KEY) or 0), "generation")

    def set(self, key: str, value: Any, generation: Optional[int] = None) -> None:
        def operation():
            if generation is not None and generation != int(self._client.get(self.GENERATION_KEY) or 0):
                logger.debug(f"Skipping stale cache write for {key}")
                return
            self._client.setex(self._full_key(key), self._ttl, json.dumps(value, default=str))

        self._safe_redis_call(operation, "set")

    def flush(self) -> None:
        def operation():
            self._client.incr(self.GENERATION_KEY)
            for keys in self._scan_keys():
                self._client.delete(*keys)

        self._safe_redis_call(operation, "flush")

    def cleanup_expired(self) -> int:
        # Redis expires keys itself
        return 0

    def get_stats(self) -> Dict[str, Any]:
        entry_count = self._safe_redis_call(lambda: sum(len(keys) for keys in self._scan_keys()), "count", fallback=0)
        return {
            "enabled": self._enabled,
            "ttl_seconds": self._ttl,
            "entry_count": entry_count,
            "max_size": -1,
            "backend": "redis",
            "connected": self._client is not None and not self._connection_failed,
        }


ResponseCacheType = Union[ResponseCache, RedisResponseCache]


def create_response_cache(
    storage_url: str = "memory://",
    ttl_seconds: int = 600,
    enabled: bool = True,
    max_size: int = 1000,
) -> ResponseCacheType:
    """
    Create the response cache for the configured backend.

    Args:
        storage_url: "memory://" for a per-process cache, or a Redis URL
            ("redis://host:6379") for a cache shared between instances
        ttl_seconds: Entry lifetime
        enabled: When False a disabled in-memory cache is returned (every get misses)
        max_size: Entry limit for the in-memory cache (ignored for Redis)
    """
    if not enabled:
        return ResponseCache(ttl_seconds=ttl_seconds, enabled=False, max_size=max_size)

    if storage_url.startswith(("redis://", "rediss://")):
        return RedisResponseCache(redis_url=storage_url, ttl_seconds=ttl_seconds, enabled=enabled)

    return ResponseCache(ttl_seconds=ttl_seconds, enabled=enabled, max_size=max_size)
