"""
Request plumbing shared by the HTTP app: client IPs, request ids, security
headers, rate-limit responses and health checks.
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from api.database import database
from config import S3_BUCKET, STORAGE_CHECK_TIMEOUT, TRUSTED_PROXIES, UPLOADS_DIR

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Return dt as an aware UTC datetime.

    SQLite hands back naive datetimes even though everything is stored as
    UTC, so naive values are assumed to be UTC already.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_real_ip(request: Request) -> str:
    """
    Client IP for rate limiting and logs.

    X-Forwarded-For is only honoured when the direct peer is a trusted proxy
    (PULSE_TRUSTED_PROXIES), so clients cannot spoof their address.
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()

    return client_ip


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach an X-Request-ID to every request and echo it on the response."""

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        # Accept a caller-supplied id only if it is short and printable
        if incoming and len(incoming) <= 64 and incoming.isprintable():
            request_id = incoming
        else:
            request_id = uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded",
            "error": str(exc.detail),
        },
    )


def _check_storage_sync() -> bool:
    """Verify the local uploads directory exists and is writable."""
    if os.environ.get("PULSE_TEST_MODE"):
        return True
    # Uploads go to S3; nothing local to probe
    if S3_BUCKET:
        return True

    try:
        if not UPLOADS_DIR.exists():
            return False
        probe = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        probe.write_text("health check")
        probe.unlink()
        return True
    except OSError:
        return False


async def check_storage_available() -> bool:
    """Run the storage probe in a thread, treating a hang as unavailable."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(_check_storage_sync), timeout=STORAGE_CHECK_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Storage health check timed out")
        return False


async def check_health() -> dict:
    """
    Check database and storage.

    Returns a dict with per-check results, overall health and the HTTP
    status code to answer with (200 or 503).
    """
    checks = {"database": False, "storage": False}

    try:
        await database.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    checks["storage"] = await check_storage_available()

    healthy = all(checks.values())
    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
