"""
Password hashing and JWT helpers
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError
from jose import jwt as jose_jwt
from passlib.context import CryptContext

from .config import (
    JWT_ACCESS_SECRET,
    JWT_ACCESS_TTL_SECONDS,
    JWT_ALGORITHM,
    JWT_REFRESH_SECRET,
    JWT_REFRESH_TTL_SECONDS,
)

logger = logging.getLogger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"

# Password hashing context
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


# ============================================================================
# PASSWORD SECURITY
# ============================================================================


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password against stored hash"""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError) as e:
        logger.error(f"Password verification error: {e}")
        return False


# ============================================================================
# JWT
# ============================================================================


def _encode(claims: dict[str, Any], secret: str, ttl_seconds: int) -> str:
    to_encode = claims.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({"iat": now, "exp": now + timedelta(seconds=ttl_seconds)})
    return jose_jwt.encode(to_encode, secret, algorithm=JWT_ALGORITHM)


def create_access_token(user_id: str, role: str) -> str:
    """Short-lived token carrying the actor (sub + role)"""
    return _encode(
        {"sub": user_id, "role": role, "type": TOKEN_TYPE_ACCESS},
        JWT_ACCESS_SECRET,
        JWT_ACCESS_TTL_SECONDS,
    )


def create_refresh_token(user_id: str, role: str, session_id: str) -> str:
    """Long-lived token bound to one auth session (sid)"""
    return _encode(
        {"sub": user_id, "role": role, "sid": session_id, "type": TOKEN_TYPE_REFRESH},
        JWT_REFRESH_SECRET,
        JWT_REFRESH_TTL_SECONDS,
    )


def decode_access_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode an access token

    Returns:
        Decoded payload if valid, None if invalid, expired or not an access token
    """
    try:
        payload = jose_jwt.decode(token, JWT_ACCESS_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"Access token verification failed: {e}")
        return None
    if payload.get("type") != TOKEN_TYPE_ACCESS or not payload.get("sub"):
        return None
    return payload


def decode_refresh_token(token: str) -> Optional[dict[str, Any]]:
    try:
        payload = jose_jwt.decode(token, JWT_REFRESH_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"Refresh token verification failed: {e}")
        return None
    if payload.get("type") != TOKEN_TYPE_REFRESH or not payload.get("sid"):
        return None
    return payload
