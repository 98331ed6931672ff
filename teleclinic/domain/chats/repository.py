"""Chat repository - Database operations for threads, policies and messages"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, joinedload

from ...models import CONSULTATION_CLOSED, CONSULTATION_IN_PROGRESS, Consultation, User
from ...models_chat import ChatMessage, ChatPolicy, ChatThread


class ChatRepository:
    """Repository for chat database operations"""

    @staticmethod
    def get_user(db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_thread(db: Session, thread_id: str) -> Optional[ChatThread]:
        return (
            db.query(ChatThread)
            .options(joinedload(ChatThread.policy))
            .filter(ChatThread.id == thread_id)
            .first()
        )

    @staticmethod
    def get_thread_by_pair(
        db: Session, doctor_user_id: str, patient_user_id: str
    ) -> Optional[ChatThread]:
        return (
            db.query(ChatThread)
            .options(
                joinedload(ChatThread.policy),
                joinedload(ChatThread.doctor),
                joinedload(ChatThread.patient),
            )
            .filter(
                ChatThread.doctor_user_id == doctor_user_id,
                ChatThread.patient_user_id == patient_user_id,
            )
            .first()
        )

    @staticmethod
    def create_thread(
        db: Session, doctor_user_id: str, patient_user_id: str, **policy_data
    ) -> ChatThread:
        """Create a thread together with its policy. Raises IntegrityError on a duplicate pair."""
        thread = ChatThread(doctor_user_id=doctor_user_id, patient_user_id=patient_user_id)
        thread.policy = ChatPolicy(**policy_data)
        db.add(thread)
        db.commit()
        db.refresh(thread)
        return thread

    @staticmethod
    def list_threads(db: Session, user_id: str, as_doctor: bool) -> list[ChatThread]:
        """Threads ordered by last message (threads without messages last), then last update"""
        column = ChatThread.doctor_user_id if as_doctor else ChatThread.patient_user_id
        return (
            db.query(ChatThread)
            .options(
                joinedload(ChatThread.policy),
                joinedload(ChatThread.doctor),
                joinedload(ChatThread.patient),
            )
            .filter(column == user_id)
            .order_by(
                ChatThread.last_message_at.is_(None),
                ChatThread.last_message_at.desc(),
                ChatThread.updated_at.desc(),
            )
            .all()
        )

    @staticmethod
    def update_policy(db: Session, policy: ChatPolicy, **updates) -> ChatPolicy:
        for key, value in updates.items():
            if hasattr(policy, key):
                setattr(policy, key, value)
        db.commit()
        db.refresh(policy)
        return policy

    # Message Methods
    @staticmethod
    def get_messages_page(
        db: Session,
        thread_id: str,
        limit: int,
        before: Optional[tuple[datetime, str]] = None,
    ) -> list[ChatMessage]:
        """
        Newest-first page keyed on (created_at, id).
        Returns up to limit + 1 rows so callers can tell whether another page exists.
        """
        query = (
            db.query(ChatMessage)
            .options(joinedload(ChatMessage.sender))
            .filter(ChatMessage.thread_id == thread_id)
        )

        if before:
            created_at, message_id = before
            query = query.filter(
                or_(
                    ChatMessage.created_at < created_at,
                    and_(ChatMessage.created_at == created_at, ChatMessage.id < message_id),
                )
            )

        return (
            query.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(limit + 1)
            .all()
        )

    @staticmethod
    def get_message_by_client_id(
        db: Session, thread_id: str, sender_user_id: str, client_message_id: str
    ) -> Optional[ChatMessage]:
        return (
            db.query(ChatMessage)
            .options(joinedload(ChatMessage.sender))
            .filter(
                ChatMessage.thread_id == thread_id,
                ChatMessage.sender_user_id == sender_user_id,
                ChatMessage.client_message_id == client_message_id,
            )
            .first()
        )

    @staticmethod
    def create_message(db: Session, thread: ChatThread, **message_data) -> ChatMessage:
        """Persist a message and bump the thread's last_message_at in one commit"""
        message = ChatMessage(thread_id=thread.id, **message_data)
        db.add(message)
        thread.last_message_at = message.created_at
        db.commit()
        db.refresh(message)
        return message

    # Consultation lookups used by the messaging policy
    @staticmethod
    def get_active_consultation(
        db: Session, doctor_user_id: str, patient_user_id: str
    ) -> Optional[Consultation]:
        return (
            db.query(Consultation)
            .filter(
                Consultation.doctor_user_id == doctor_user_id,
                Consultation.patient_user_id == patient_user_id,
                Consultation.status == CONSULTATION_IN_PROGRESS,
            )
            .order_by(Consultation.started_at.desc())
            .first()
        )

    @staticmethod
    def get_recent_closed_consultation(
        db: Session, doctor_user_id: str, patient_user_id: str, since: datetime
    ) -> Optional[Consultation]:
        return (
            db.query(Consultation)
            .filter(
                Consultation.doctor_user_id == doctor_user_id,
                Consultation.patient_user_id == patient_user_id,
                Consultation.status == CONSULTATION_CLOSED,
                Consultation.closed_at >= since,
            )
            .order_by(Consultation.closed_at.desc())
            .first()
        )
