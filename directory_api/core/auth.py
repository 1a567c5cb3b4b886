"""
Auth utilities for the directory API.

Verifies HS256 bearer tokens minted by the account service and resolves
the calling user. Credentials and password hashing live elsewhere.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Header, HTTPException
import logging

from directory_api.core.config import settings
from directory_api.features.users.service import get_or_create_user

logger = logging.getLogger("directory.auth")


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _secret() -> str:
    if not settings.JWT_SECRET:
        raise HTTPException(status_code=401, detail="Authentication not configured")
    return settings.JWT_SECRET


def issue_token(user_id: str, role: str = "user", expires_in: Optional[timedelta] = None) -> str:
    """Mint a bearer token (operators, tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + (expires_in or timedelta(hours=settings.JWT_EXPIRY_HOURS)),
    }
    return jwt.encode(payload, _secret(), algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify signature and expiry.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    try:
        return jwt.decode(token, _secret(), algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.PyJWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")


def get_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[7:].strip()
    return token or None


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """
    FastAPI dependency: authenticated caller.

    The user row is created on first sight of a token subject so the
    ledger's foreign key always resolves.
    """
    token = get_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Authorization header required")

    claims = decode_token(token)
    user_id = claims.get("user_id") or claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token claims")

    role = claims.get("role") or "user"
    get_or_create_user(str(user_id), role=role)
    return AuthContext(user_id=str(user_id), role=role)
