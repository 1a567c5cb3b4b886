"""
Admin authentication.

Accepts either:
- Bearer JWT with role "admin" (preferred)
- Legacy X-Admin-Key shared secret
"""
import hashlib
from dataclasses import dataclass
from typing import Literal, Optional

import jwt
from fastapi import HTTPException, Request

from directory_api.core.config import settings
from directory_api.core.errors import ForbiddenError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["jwt", "legacy_key"]
    actor_id: str  # user id or "legacy:<hash>"


def verify_legacy_key(request: Request) -> Optional[AdminActor]:
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or header_key != expected_key:
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_type="legacy_key", actor_id=f"legacy:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require admin credentials.

    401 when no credentials are presented, 403 when they are valid but not admin.
    """
    actor = verify_legacy_key(request)
    if actor:
        return actor

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        if request.headers.get("X-Admin-Key"):
            raise ForbiddenError("Invalid admin key")
        raise HTTPException(status_code=401, detail="Admin credentials required")

    if not settings.JWT_SECRET:
        raise HTTPException(status_code=401, detail="Authentication not configured")

    try:
        claims = jwt.decode(auth_header[7:].strip(), settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if claims.get("role") != "admin":
        raise ForbiddenError("Admin access required")

    return AdminActor(actor_type="jwt", actor_id=str(claims.get("user_id") or claims.get("sub") or "unknown"))
