import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import User
from ..schemas import UserMeResponse, UserMeUpdate, UserSummary
from ..shared.validators import validate_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])


def _me_response(user: User) -> UserMeResponse:
    return UserMeResponse(
        id=user.id,
        role=user.role,
        email=user.email,
        displayName=user.display_name,
        status=user.status,
        createdAt=user.created_at,
    )


@router.get("/me", response_model=UserMeResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    return _me_response(current_user)


@router.patch("/me", response_model=UserMeResponse)
async def update_me(
    data: UserMeUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update the current user's display name"""
    if data.displayName is not None:
        display_name = data.displayName.strip()
        current_user.display_name = display_name or None
    db.commit()
    db.refresh(current_user)
    return _me_response(current_user)


@router.get("/{user_id}", response_model=UserSummary)
async def get_user_summary(
    user_id: str,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Public summary of another user, used to label chat counterparts"""
    user = db.query(User).filter(User.id == user_id).first() if validate_uuid(user_id) else None
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserSummary(id=user.id, role=user.role, displayName=user.display_name)
