import logging
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .database import get_db
from .models import USER_DISABLED, User
from .security_utils import decode_access_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def resolve_user_from_token(token: str, db: Session) -> Optional[User]:
    """
    Resolve the user behind an access token.
    Returns None when the token is invalid, expired, or the user is gone or disabled.
    """
    payload = decode_access_token(token)
    if not payload:
        return None

    user = db.query(User).filter(User.id == payload["sub"]).first()
    if not user:
        logger.warning(f"⚠️ Token subject {payload['sub']} no longer exists")
        return None
    if user.status == USER_DISABLED:
        logger.warning(f"⚠️ Disabled user {user.id} presented a valid token")
        return None
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current user from the bearer access token"""

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    token = credentials.credentials
    if len(token.split(".")) != 3:
        logger.warning(f"⚠️ Malformed token received, length: {len(token)}")
        raise HTTPException(
            status_code=401, detail="Invalid token format. Expected a valid JWT token."
        )

    user = resolve_user_from_token(token, db)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.debug(f"✅ User authenticated: {user.id} ({user.role})")
    return user


def require_roles(*roles: str):
    """
    Create a dependency that only lets the given roles through.

    Example usage:
        @router.post("/consultations")
        async def create(current_user: User = Depends(require_roles("doctor"))):
            ...
    """

    async def role_checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            logger.warning(f"⚠️ Role {user.role} denied, required one of {roles}")
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return role_checker
