"""
Retry helpers for transient database errors.

Both backends are handled:

SQLite (tests and small deployments):
- "database is locked" / SQLITE_BUSY / SQLITE_LOCKED write contention

PostgreSQL:
- Deadlocks (40P01) and serialization failures (40001)
- Lock timeouts and dropped connections
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

RETRYABLE_PATTERNS = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "canceling statement due to lock timeout",
    "lock timeout",
    # Connections
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)

RETRYABLE_SQLSTATES = ("40P01", "40001")


class DatabaseRetryableError(Exception):
    """Raised when a database operation still fails after all retries."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check whether an exception (or its cause chain) is a transient database error."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in RETRYABLE_PATTERNS):
        return True

    # asyncpg exposes the SQLSTATE code directly
    if getattr(exc, "sqlstate", None) in RETRYABLE_SQLSTATES:
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
    # +/-25% jitter
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + jitter)


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Await func(*args, **kwargs), retrying transient database errors.

    Uses exponential backoff with jitter. Non-retryable errors propagate
    immediately; once retries are exhausted DatabaseRetryableError is raised.
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise
            last_exception = e

            if attempt < max_retries:
                delay = _backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


async def _timed(operation: Callable[[], Awaitable[Any]], query) -> Any:
    start_time = time.monotonic()
    result = await operation()
    elapsed = time.monotonic() - start_time
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(query, **retry_kwargs):
    """Run database.fetch_one with retries. Returns a row or None."""
    from api.database import database

    return await execute_with_retry(lambda: _timed(lambda: database.fetch_one(query), query), **retry_kwargs)


async def fetch_all_with_retry(query, **retry_kwargs):
    """Run database.fetch_all with retries."""
    from api.database import database

    return await execute_with_retry(lambda: _timed(lambda: database.fetch_all(query), query), **retry_kwargs)


async def fetch_val_with_retry(query, **retry_kwargs):
    """Run database.fetch_val with retries. Returns a scalar or None."""
    from api.database import database

    return await execute_with_retry(lambda: _timed(lambda: database.fetch_val(query), query), **retry_kwargs)


async def db_execute_with_retry(query, values=None, **retry_kwargs):
    """Run a write query with retries. Returns the driver result (row id for inserts)."""
    from api.database import database

    async def _execute():
        if values is not None:
            return await database.execute(query, values)
        return await database.execute(query)

    return await execute_with_retry(lambda: _timed(_execute, query), **retry_kwargs)
