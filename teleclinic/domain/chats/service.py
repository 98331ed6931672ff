"""Chat service - Business logic for doctor/patient messaging"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...clock import SystemClock, get_clock
from ...config import (
    CHAT_DEFAULT_BURST_LIMIT,
    CHAT_DEFAULT_BURST_WINDOW_SECONDS,
    CHAT_DEFAULT_DAILY_LIMIT,
    CHAT_DEFAULT_RECENT_CONSULTATION_HOURS,
)
from ...database import get_db
from ...models import AUDIT_READ, AUDIT_WRITE, ROLE_DOCTOR, ROLE_PATIENT, User
from ...models_chat import (
    MESSAGE_KIND_TEXT,
    SENDER_DOCTOR,
    SENDER_PATIENT,
    ChatMessage,
    ChatPolicy,
    ChatThread,
)
from ...request_context import get_trace_id
from ...services.audit_service import AuditService
from ...shared.cursor import InvalidCursorError, decode_cursor, encode_cursor
from .rate_limit import ChatRateLimiter, get_chat_rate_limiter
from .repository import ChatRepository
from .schemas import (
    ChatMessageResponse,
    ChatPolicyResponse,
    ChatThreadResponse,
    ChatUser,
    MessagesResponse,
    PageInfo,
    PolicyUpdate,
)

logger = logging.getLogger(__name__)

# Policy decision codes
NOT_FOUND = "NOT_FOUND"
THREAD_CLOSED_BY_DOCTOR = "THREAD_CLOSED_BY_DOCTOR"
PATIENT_MESSAGING_DISABLED = "PATIENT_MESSAGING_DISABLED"
RECENT_CONSULTATION_REQUIRED = "RECENT_CONSULTATION_REQUIRED"

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

# PolicyUpdate field -> ChatPolicy column
POLICY_FIELDS = {
    "patientCanMessage": "patient_can_message",
    "allowedSchedule": "allowed_schedule",
    "dailyLimit": "daily_limit",
    "burstLimit": "burst_limit",
    "burstWindowSeconds": "burst_window_seconds",
    "requireRecentConsultation": "require_recent_consultation",
    "recentConsultationWindowHours": "recent_consultation_window_hours",
    "closedByDoctor": "closed_by_doctor",
}


def _forbidden() -> HTTPException:
    return HTTPException(status_code=403, detail="Forbidden")


def _parse_cursor(cursor: str) -> tuple[datetime, str]:
    """Decode a message cursor into its (created_at, id) key"""
    try:
        data = decode_cursor(cursor)
        created_at = data["createdAt"]
        message_id = data["id"]
        if not isinstance(created_at, str) or not isinstance(message_id, str):
            raise InvalidCursorError("Invalid cursor")
        if created_at.endswith("Z"):
            created_at = created_at[:-1] + "+00:00"
        parsed = datetime.fromisoformat(created_at)
    except (InvalidCursorError, KeyError, ValueError) as e:
        raise HTTPException(status_code=422, detail="Invalid cursor") from e

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed, message_id


def chat_user(user: Optional[User]) -> Optional[ChatUser]:
    if user is None:
        return None
    return ChatUser(id=user.id, email=user.email, displayName=user.display_name)


def policy_to_response(policy: ChatPolicy) -> ChatPolicyResponse:
    return ChatPolicyResponse(
        threadId=policy.thread_id,
        patientCanMessage=policy.patient_can_message,
        allowedSchedule=policy.allowed_schedule,
        dailyLimit=policy.daily_limit,
        burstLimit=policy.burst_limit,
        burstWindowSeconds=policy.burst_window_seconds,
        requireRecentConsultation=policy.require_recent_consultation,
        recentConsultationWindowHours=policy.recent_consultation_window_hours,
        closedByDoctor=policy.closed_by_doctor,
        createdAt=policy.created_at,
        updatedAt=policy.updated_at,
    )


def thread_to_response(thread: ChatThread) -> ChatThreadResponse:
    return ChatThreadResponse(
        id=thread.id,
        doctorUserId=thread.doctor_user_id,
        patientUserId=thread.patient_user_id,
        lastMessageAt=thread.last_message_at,
        createdAt=thread.created_at,
        updatedAt=thread.updated_at,
        policy=policy_to_response(thread.policy) if thread.policy else None,
        doctor=chat_user(thread.doctor),
        patient=chat_user(thread.patient),
    )


def message_to_response(message: ChatMessage) -> ChatMessageResponse:
    return ChatMessageResponse(
        id=message.id,
        threadId=message.thread_id,
        senderUserId=message.sender_user_id,
        senderRole=message.sender_role,
        kind=message.kind,
        text=message.text,
        clientMessageId=message.client_message_id,
        contextConsultationId=message.context_consultation_id,
        createdAt=message.created_at,
        sender=chat_user(message.sender),
    )


class ChatService:
    """Service layer for chat threads, policies and messages"""

    def __init__(self, db: Session, rate_limiter: ChatRateLimiter, clock: SystemClock):
        self.db = db
        self.repo = ChatRepository()
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.audit = AuditService(db)

    def _get_thread(self, thread_id: str) -> ChatThread:
        thread = self.repo.get_thread(self.db, thread_id)
        if not thread:
            raise HTTPException(status_code=404, detail="Thread not found")
        return thread

    def _sender_role(self, actor: User, thread: ChatThread) -> str:
        """Role the actor plays in the thread. Raises 403 for outsiders."""
        if actor.role == ROLE_DOCTOR and thread.doctor_user_id == actor.id:
            return SENDER_DOCTOR
        if actor.role == ROLE_PATIENT and thread.patient_user_id == actor.id:
            return SENDER_PATIENT
        raise _forbidden()

    # ========================================================================
    # THREADS
    # ========================================================================

    def get_or_create_thread(self, actor: User, other_user_id: str) -> ChatThread:
        """Find the thread between the actor and another user, creating it if needed"""
        if actor.role == ROLE_DOCTOR:
            doctor_user_id, patient_user_id = actor.id, other_user_id
            other = self.repo.get_user(self.db, other_user_id)
            if not other or other.role != ROLE_PATIENT or not other.patient_profile:
                raise HTTPException(status_code=404, detail="Patient not found")
        elif actor.role == ROLE_PATIENT:
            doctor_user_id, patient_user_id = other_user_id, actor.id
            other = self.repo.get_user(self.db, other_user_id)
            if not other or other.role != ROLE_DOCTOR or not other.doctor_profile:
                raise HTTPException(status_code=404, detail="Doctor not found")
        else:
            raise _forbidden()

        thread = self.repo.get_thread_by_pair(self.db, doctor_user_id, patient_user_id)
        if thread:
            return thread

        try:
            thread = self.repo.create_thread(
                self.db,
                doctor_user_id,
                patient_user_id,
                patient_can_message=True,
                daily_limit=CHAT_DEFAULT_DAILY_LIMIT,
                burst_limit=CHAT_DEFAULT_BURST_LIMIT,
                burst_window_seconds=CHAT_DEFAULT_BURST_WINDOW_SECONDS,
                require_recent_consultation=True,
                recent_consultation_window_hours=CHAT_DEFAULT_RECENT_CONSULTATION_HOURS,
                closed_by_doctor=False,
            )
        except IntegrityError:
            # Another request created the pair first
            self.db.rollback()
            thread = self.repo.get_thread_by_pair(self.db, doctor_user_id, patient_user_id)
            if not thread:
                raise
            return thread

        logger.info(f"💬 Created chat thread {thread.id}")
        self.audit.log(
            AUDIT_WRITE,
            "ChatThread",
            thread.id,
            actor=actor,
            trace_id=get_trace_id(),
            metadata={"event": "thread_created"},
        )
        return thread

    def list_threads(self, actor: User) -> list[ChatThread]:
        if actor.role not in (ROLE_DOCTOR, ROLE_PATIENT):
            raise _forbidden()

        threads = self.repo.list_threads(self.db, actor.id, as_doctor=actor.role == ROLE_DOCTOR)
        self.audit.log(
            AUDIT_READ,
            "ChatThread",
            "list",
            actor=actor,
            trace_id=get_trace_id(),
            metadata={"event": "list_threads"},
        )
        return threads

    def ensure_participant(self, actor: User, thread_id: str) -> ChatThread:
        """Load a thread the actor takes part in (404 unknown, 403 otherwise)"""
        thread = self._get_thread(thread_id)
        self._sender_role(actor, thread)
        return thread

    # ========================================================================
    # MESSAGES
    # ========================================================================

    def get_messages(
        self,
        actor: User,
        thread_id: str,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> MessagesResponse:
        """Newest-first page of messages with an opaque continuation cursor"""
        self.ensure_participant(actor, thread_id)

        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        before = _parse_cursor(cursor) if cursor else None

        rows = self.repo.get_messages_page(self.db, thread_id, limit, before)
        has_next = len(rows) > limit
        items = rows[:limit]

        end_cursor = None
        if has_next and items:
            last = items[-1]
            end_cursor = encode_cursor({"createdAt": last.created_at.isoformat(), "id": last.id})

        response = MessagesResponse(
            items=[message_to_response(m) for m in items],
            pageInfo=PageInfo(hasNextPage=has_next, endCursor=end_cursor),
        )

        self.audit.log(
            AUDIT_READ,
            "ChatMessage",
            thread_id,
            actor=actor,
            trace_id=get_trace_id(),
            metadata={"event": "list_messages"},
        )
        return response

    def create_message(
        self,
        actor: User,
        thread_id: str,
        kind: str,
        text: Optional[str],
        client_message_id: Optional[str] = None,
    ) -> ChatMessage:
        """
        Send a message into a thread.

        A retry carrying a client_message_id already stored for this sender
        returns the stored message without re-checking the policy.
        """
        thread = self._get_thread(thread_id)
        sender_role = self._sender_role(actor, thread)

        # A blank dedup key means none; "" would otherwise collide on the unique key
        client_message_id = client_message_id or None
        if client_message_id:
            existing = self.repo.get_message_by_client_id(
                self.db, thread_id, actor.id, client_message_id
            )
            if existing:
                logger.info(f"🔁 Duplicate client message {client_message_id} on thread {thread_id}")
                return existing

        if kind == MESSAGE_KIND_TEXT and not text:
            raise HTTPException(status_code=422, detail="text is required for text messages")

        if sender_role == SENDER_PATIENT:
            allowed, code = self.check_patient_can_message(thread_id, actor.id)
            if not allowed:
                logger.info(f"🚫 Patient {actor.id} blocked on thread {thread_id}: {code}")
                raise HTTPException(
                    status_code=409, detail={"message": "Cannot send message", "code": code}
                )

        consultation = self.repo.get_active_consultation(
            self.db, thread.doctor_user_id, thread.patient_user_id
        )

        try:
            message = self.repo.create_message(
                self.db,
                thread,
                sender_user_id=actor.id,
                sender_role=sender_role,
                kind=kind,
                text=text,
                client_message_id=client_message_id,
                context_consultation_id=consultation.id if consultation else None,
                created_at=self.clock.now(),
            )
        except IntegrityError:
            # Same client_message_id stored concurrently
            self.db.rollback()
            existing = None
            if client_message_id:
                existing = self.repo.get_message_by_client_id(
                    self.db, thread_id, actor.id, client_message_id
                )
            if not existing:
                raise
            return existing

        self.audit.log(
            AUDIT_WRITE,
            "ChatMessage",
            message.id,
            actor=actor,
            trace_id=get_trace_id(),
            metadata={"event": "message_created", "threadId": thread_id, "kind": kind},
        )
        return message

    # ========================================================================
    # POLICY
    # ========================================================================

    def update_policy(self, actor: User, thread_id: str, data: PolicyUpdate) -> ChatPolicy:
        """Apply a doctor's partial policy update"""
        thread = self._get_thread(thread_id)
        if actor.role != ROLE_DOCTOR or thread.doctor_user_id != actor.id:
            raise _forbidden()

        # Explicit nulls get past the schema; only allowedSchedule may be cleared
        supplied = data.model_dump(exclude_unset=True)
        for field, value in supplied.items():
            if field == "allowedSchedule":
                continue
            if value is None:
                raise HTTPException(status_code=422, detail=f"{field} must not be null")
            if isinstance(value, int) and not isinstance(value, bool) and value <= 0:
                raise HTTPException(status_code=422, detail=f"{field} must be > 0")

        updates: dict[str, Any] = {POLICY_FIELDS[field]: value for field, value in supplied.items()}

        policy = thread.policy
        if not policy:
            raise HTTPException(status_code=404, detail="Policy not found")
        policy = self.repo.update_policy(self.db, policy, **updates)

        logger.info(f"📝 Policy updated on thread {thread_id}: {sorted(supplied)}")
        self.audit.log(
            AUDIT_WRITE,
            "ChatPolicy",
            thread_id,
            actor=actor,
            trace_id=get_trace_id(),
            metadata={"event": "policy_updated", "updates": supplied},
        )
        return policy

    def check_patient_can_message(
        self, thread_id: str, patient_user_id: str, enforce_rate_limits: bool = True
    ) -> tuple[bool, Optional[str]]:
        """
        Evaluate the thread policy for a patient message.
        Returns (allowed, code); the first failing rule decides the code.
        """
        thread = self.repo.get_thread(self.db, thread_id)
        if not thread or not thread.policy:
            return False, NOT_FOUND

        policy = thread.policy
        if policy.closed_by_doctor:
            return False, THREAD_CLOSED_BY_DOCTOR
        if not policy.patient_can_message:
            return False, PATIENT_MESSAGING_DISABLED

        # An ongoing consultation lifts every remaining restriction
        if self.repo.get_active_consultation(self.db, thread.doctor_user_id, thread.patient_user_id):
            return True, None

        if policy.require_recent_consultation:
            since = self.clock.now() - timedelta(hours=policy.recent_consultation_window_hours)
            recent = self.repo.get_recent_closed_consultation(
                self.db, thread.doctor_user_id, thread.patient_user_id, since
            )
            if not recent:
                return False, RECENT_CONSULTATION_REQUIRED

        if not enforce_rate_limits:
            return True, None

        allowed, code = self.rate_limiter.check_daily_limit(
            thread_id, patient_user_id, policy.daily_limit
        )
        if not allowed:
            return False, code

        allowed, code = self.rate_limiter.check_burst_limit(
            thread_id, patient_user_id, policy.burst_limit, policy.burst_window_seconds
        )
        if not allowed:
            return False, code

        return True, None


def get_chat_service(
    db: Session = Depends(get_db),
    rate_limiter: ChatRateLimiter = Depends(get_chat_rate_limiter),
    clock: SystemClock = Depends(get_clock),
) -> ChatService:
    """Dependency injection for ChatService"""
    return ChatService(db, rate_limiter, clock)
