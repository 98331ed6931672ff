from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .clock import utcnow
from .database import Base
from .models import generate_id

# Message kinds
MESSAGE_KIND_TEXT = "text"
MESSAGE_KIND_SYSTEM = "system"

# Participant roles
SENDER_DOCTOR = "doctor"
SENDER_PATIENT = "patient"


class ChatThread(Base):
    """One thread per (doctor, patient) pair"""

    __tablename__ = "chat_threads"

    id = Column(String(36), primary_key=True, default=generate_id)
    doctor_user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    patient_user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    doctor = relationship("User", foreign_keys=[doctor_user_id])
    patient = relationship("User", foreign_keys=[patient_user_id])
    policy = relationship(
        "ChatPolicy", back_populates="thread", uselist=False, cascade="all, delete-orphan"
    )
    messages = relationship("ChatMessage", back_populates="thread", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("doctor_user_id", "patient_user_id", name="uq_chat_threads_pair"),
        Index("ix_chat_threads_doctor_last_message", "doctor_user_id", "last_message_at"),
        Index("ix_chat_threads_patient_last_message", "patient_user_id", "last_message_at"),
    )


class ChatPolicy(Base):
    """Rules gating when the patient of a thread may message the doctor"""

    __tablename__ = "chat_policies"

    thread_id = Column(
        String(36), ForeignKey("chat_threads.id", ondelete="CASCADE"), primary_key=True
    )
    patient_can_message = Column(Boolean, default=True, nullable=False)
    allowed_schedule = Column(JSON, nullable=True)  # Stored for clients, not enforced
    daily_limit = Column(Integer, default=10, nullable=False)
    burst_limit = Column(Integer, default=3, nullable=False)
    burst_window_seconds = Column(Integer, default=30, nullable=False)
    require_recent_consultation = Column(Boolean, default=True, nullable=False)
    recent_consultation_window_hours = Column(Integer, default=72, nullable=False)
    closed_by_doctor = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    thread = relationship("ChatThread", back_populates="policy")


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True, default=generate_id)
    thread_id = Column(
        String(36), ForeignKey("chat_threads.id", ondelete="CASCADE"), nullable=False
    )
    sender_user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    sender_role = Column(String(20), nullable=False)  # doctor, patient
    kind = Column(String(20), nullable=False)  # text, system
    text = Column(Text, nullable=True)
    client_message_id = Column(String(255), nullable=True)  # Client-supplied dedup key
    context_consultation_id = Column(
        String(36), ForeignKey("consultations.id", ondelete="SET NULL"), nullable=True
    )
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    thread = relationship("ChatThread", back_populates="messages")
    sender = relationship("User")

    __table_args__ = (
        UniqueConstraint(
            "thread_id", "sender_user_id", "client_message_id", name="uq_chat_messages_dedup"
        ),
        Index("ix_chat_messages_thread_created", "thread_id", "created_at"),
        Index("ix_chat_messages_thread_delivered", "thread_id", "delivered_at"),
    )
