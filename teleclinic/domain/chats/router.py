"""Chat router - FastAPI endpoints for threads, messages and policies"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ...auth import get_current_user
from ...models import ROLE_PATIENT, User
from .gateway import manager
from .schemas import (
    ChatMessageResponse,
    ChatPolicyResponse,
    ChatThreadResponse,
    MessageCreate,
    MessagesResponse,
    PolicyCheckResponse,
    PolicyUpdate,
)
from .service import (
    ChatService,
    get_chat_service,
    message_to_response,
    policy_to_response,
    thread_to_response,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["Chats"])


# ============================================================================
# THREADS
# ============================================================================


@router.get("/threads/with/{other_user_id}", response_model=ChatThreadResponse)
async def get_or_create_thread(
    other_user_id: str,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Get the thread with another user, creating it on first contact"""
    thread = service.get_or_create_thread(current_user, other_user_id)
    return thread_to_response(thread)


@router.get("/threads", response_model=list[ChatThreadResponse])
async def list_threads(
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    threads = service.list_threads(current_user)
    return [thread_to_response(t) for t in threads]


# ============================================================================
# MESSAGES
# ============================================================================


@router.get("/threads/{thread_id}/messages", response_model=MessagesResponse)
async def get_messages(
    thread_id: str,
    limit: int = Query(50, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return service.get_messages(current_user, thread_id, cursor=cursor, limit=limit)


@router.post("/threads/{thread_id}/messages", response_model=ChatMessageResponse)
async def send_message(
    thread_id: str,
    data: MessageCreate,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Send a message over HTTP. Connected sockets in the thread room receive it too."""
    message = service.create_message(
        current_user, thread_id, data.kind, data.text, data.clientMessageId
    )
    response = message_to_response(message)
    await manager.broadcast_message(thread_id, response)
    return response


# ============================================================================
# POLICY
# ============================================================================


@router.patch("/threads/{thread_id}/policy", response_model=ChatPolicyResponse)
async def update_policy(
    thread_id: str,
    data: PolicyUpdate,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    policy = service.update_policy(current_user, thread_id, data)
    return policy_to_response(policy)


@router.get("/threads/{thread_id}/policy/check", response_model=PolicyCheckResponse)
async def check_policy(
    thread_id: str,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Whether the patient could message right now, without spending rate-limit budget"""
    if current_user.role != ROLE_PATIENT:
        raise HTTPException(status_code=403, detail="Forbidden")

    service.ensure_participant(current_user, thread_id)
    allowed, code = service.check_patient_can_message(
        thread_id, current_user.id, enforce_rate_limits=False
    )
    return PolicyCheckResponse(allowed=allowed, code=code)
