"""
Shared async Redis connection with graceful fallback.

Redis is optional. When PULSE_REDIS_URL is empty, or the server keeps failing,
callers get None from get_redis() and fall back to in-process behaviour. A
simple circuit breaker stops hammering a dead server: after three consecutive
failures the client reports itself unavailable for an increasing backoff.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from config import (
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_MAX_BACKOFF_SECONDS = 300


class RedisClient:
    """Process-wide Redis client with a connection pool and circuit breaker."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None
    _initialized: bool = False

    def __init__(self, url: str = REDIS_URL) -> None:
        self._url = url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._healthy = False
        self._last_health_check: Optional[datetime] = None
        self._consecutive_failures = 0
        self._circuit_open_until: Optional[datetime] = None

    @classmethod
    def _get_lock(cls) -> asyncio.Lock:
        """Return the class lock, recreating it if bound to another event loop."""
        if cls._lock is None:
            cls._lock = asyncio.Lock()
            return cls._lock
        try:
            current_loop = asyncio.get_running_loop()
            lock_loop = getattr(cls._lock, "_loop", None)
            if lock_loop is not None and lock_loop is not current_loop:
                cls._lock = asyncio.Lock()
        except RuntimeError:
            cls._lock = asyncio.Lock()
        return cls._lock

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        async with cls._get_lock():
            if cls._instance is None:
                cls._instance = cls()
            if not cls._initialized:
                await cls._instance._connect()
                cls._initialized = True
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Close and forget the shared instance (shutdown and tests)."""
        async with cls._get_lock():
            if cls._instance is not None:
                await cls._instance.close()
            cls._instance = None
            cls._initialized = False

    async def _connect(self) -> None:
        if not self._url:
            logger.info("Redis URL not configured, events and caches stay in-process")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=REDIS_POOL_SIZE,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_error=[RedisConnectionError],
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            self._healthy = True
            self._last_health_check = datetime.now(timezone.utc)
            logger.info(f"Redis connection established: {self._url.split('@')[-1]}")
        except Exception as e:
            logger.warning(f"Redis connection failed during initialization: {e}")
            self._healthy = False

    @property
    def is_configured(self) -> bool:
        return bool(self._url)

    @property
    def is_available(self) -> bool:
        """True when configured, connected and the circuit breaker is closed."""
        if not self._url or self._client is None:
            return False

        if self._circuit_open_until is not None:
            if datetime.now(timezone.utc) < self._circuit_open_until:
                return False
            # Half-open: let the next call probe the server
            self._circuit_open_until = None
            self._healthy = True
            logger.info("Redis circuit breaker closing, attempting reconnection")

        return self._healthy

    async def get_client(self) -> Optional[Redis]:
        if not self.is_available:
            return None
        return self._client

    def record_failure(self) -> None:
        """Count a failed operation, opening the circuit after repeated failures."""
        self._consecutive_failures += 1
        self._healthy = False

        if self._consecutive_failures >= CIRCUIT_FAILURE_THRESHOLD:
            # 30s, 60s, 120s, ... capped
            backoff = min(
                CIRCUIT_MAX_BACKOFF_SECONDS,
                30 * (2 ** (self._consecutive_failures - CIRCUIT_FAILURE_THRESHOLD)),
            )
            self._circuit_open_until = datetime.now(timezone.utc) + timedelta(seconds=backoff)
            logger.warning(
                f"Redis circuit breaker opened for {backoff}s (consecutive failures: {self._consecutive_failures})"
            )
        else:
            # Stay usable below the threshold
            self._healthy = True

    def record_success(self) -> None:
        if self._consecutive_failures > 0:
            logger.info(f"Redis connection recovered after {self._consecutive_failures} failures")
        self._consecutive_failures = 0
        self._healthy = True
        self._circuit_open_until = None

    async def health_check(self) -> bool:
        """Ping the server, at most once per health-check interval."""
        if not self._client:
            return False

        if self._last_health_check:
            elapsed = (datetime.now(timezone.utc) - self._last_health_check).total_seconds()
            if elapsed < REDIS_HEALTH_CHECK_INTERVAL:
                return self._healthy

        try:
            await self._client.ping()
            self.record_success()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            self.record_failure()
            return False
        finally:
            self._last_health_check = datetime.now(timezone.utc)

    async def close(self) -> None:
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug(f"Exception while closing Redis client: {e}")
        if self._pool:
            try:
                await self._pool.disconnect()
            except Exception as e:
                logger.debug(f"Exception while disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False


async def get_redis() -> Optional[Redis]:
    """Return the shared Redis client, or None when Redis is unavailable."""
    client = await RedisClient.get_instance()
    return await client.get_client()


async def report_redis_failure() -> None:
    """Feed a failed operation into the circuit breaker."""
    client = await RedisClient.get_instance()
    client.record_failure()
