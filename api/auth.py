"""
API key authentication for users.

Login, registration and token issuance live outside this service. Each user
holds one API key, sent as the X-API-Key header, which identifies them and
their role. Only the SHA-256 hash of a key is stored; the first 8 characters
are kept in clear for lookup.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from api.database import users
from api.db_retry import db_execute_with_retry, fetch_all_with_retry
from api.enums import UserRole
from config import TRUSTED_PROXIES

# Authentication failures go to a dedicated logger for security monitoring
security_logger = logging.getLogger("security.auth")

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)

KEY_PREFIX_LENGTH = 8


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def get_key_prefix(key: str) -> str:
    return key[:KEY_PREFIX_LENGTH]


def generate_api_key() -> str:
    return f"pk_{secrets.token_urlsafe(32)}"


def _request_context(request: Optional[Request]) -> dict:
    """Client details for security log entries."""
    if request is None:
        return {"ip_address": "unknown", "user_agent": "unknown"}

    direct_ip = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = direct_ip
    if forwarded and direct_ip in TRUSTED_PROXIES:
        ip_address = forwarded.split(",")[0].strip()

    return {
        "ip_address": ip_address,
        "direct_ip": direct_ip,
        "user_agent": request.headers.get("user-agent", "unknown"),
        "path": request.url.path,
    }


def _public_user(row) -> Dict:
    return {"id": row["id"], "name": row["name"], "email": row["email"], "role": UserRole(row["role"])}


async def authenticate_api_key(api_key: str) -> Optional[Dict]:
    """Return the active user owning api_key, or None."""
    prefix = get_key_prefix(api_key)
    candidates = await fetch_all_with_retry(
        users.select().where(users.c.api_key_prefix == prefix).where(users.c.revoked_at.is_(None))
    )
    key_hash = hash_api_key(api_key)
    for row in candidates:
        if hmac.compare_digest(key_hash, row["api_key_hash"]):
            return _public_user(row)
    return None


async def get_current_user(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
) -> Dict:
    """FastAPI dependency: the authenticated user, or 401."""
    ctx = _request_context(request)

    if not api_key:
        security_logger.warning(
            "Authentication failed: missing API key",
            extra={"event": "auth_failure", "reason": "missing_key", **ctx},
        )
        raise HTTPException(status_code=401, detail=f"Not authorized. Include the {API_KEY_HEADER} header.")

    user = await authenticate_api_key(api_key)
    if user is None:
        security_logger.warning(
            "Authentication failed: invalid API key",
            extra={"event": "auth_failure", "reason": "invalid_key", "key_prefix": get_key_prefix(api_key), **ctx},
        )
        raise HTTPException(status_code=401, detail="Not authorized, invalid API key")

    request.state.user = user
    return user


def require_role(*roles: UserRole) -> Callable:
    """Dependency factory: the authenticated user, or 403 if their role is not allowed."""
    allowed = frozenset(roles)

    async def dependency(request: Request, user: Dict = Depends(get_current_user)) -> Dict:
        if user["role"] not in allowed:
            security_logger.warning(
                "Authorization failed: role not permitted",
                extra={
                    "event": "authz_failure",
                    "user_id": user["id"],
                    "role": user["role"].value,
                    **_request_context(request),
                },
            )
            raise HTTPException(
                status_code=403,
                detail=f"User role {user['role'].value} is not authorized to access this route",
            )
        return user

    return dependency


async def create_user(name: str, email: str, role: UserRole) -> Tuple[Dict, str]:
    """Create a user and return (user, api_key). The key is only available here."""
    api_key = generate_api_key()
    user_id = await db_execute_with_retry(
        users.insert().values(
            name=name,
            email=email.strip().lower(),
            role=UserRole(role).value,
            api_key_prefix=get_key_prefix(api_key),
            api_key_hash=hash_api_key(api_key),
            created_at=datetime.now(timezone.utc),
        )
    )
    logger.info(f"Created {UserRole(role).value} user {user_id}")
    return {"id": user_id, "name": name, "email": email.strip().lower(), "role": UserRole(role)}, api_key


async def list_users(role: Optional[UserRole] = None) -> List[Dict]:
    query = users.select().where(users.c.revoked_at.is_(None)).order_by(users.c.id)
    if role is not None:
        query = query.where(users.c.role == role.value)
    return [_public_user(row) for row in await fetch_all_with_retry(query)]
