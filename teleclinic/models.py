import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .clock import utcnow
from .database import Base

# User roles
ROLE_PATIENT = "patient"
ROLE_DOCTOR = "doctor"
ROLE_ADMIN = "admin"

# User status
USER_ACTIVE = "active"
USER_DISABLED = "disabled"

# Auth session status
SESSION_ACTIVE = "active"
SESSION_REVOKED = "revoked"
SESSION_ROTATED = "rotated"

# Consultation status
CONSULTATION_DRAFT = "draft"
CONSULTATION_IN_PROGRESS = "in_progress"
CONSULTATION_CLOSED = "closed"

# Audit actions
AUDIT_READ = "READ"
AUDIT_WRITE = "WRITE"


def generate_id():
    """Generate a UUID4 primary key"""
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    email = Column(String(255), unique=True, index=True, nullable=False)  # Stored lower-cased
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False)  # patient, doctor, admin
    status = Column(String(20), default=USER_ACTIVE, nullable=False)  # active, disabled
    display_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    doctor_profile = relationship(
        "DoctorProfile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    patient_profile = relationship(
        "PatientProfile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    sessions = relationship("AuthSession", back_populates="user", cascade="all, delete-orphan")


class DoctorProfile(Base):
    __tablename__ = "doctor_profiles"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    verification_status = Column(
        String(20), default="unverified", nullable=False
    )  # unverified, pending, verified, rejected
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="doctor_profile")


class PatientProfile(Base):
    __tablename__ = "patient_profiles"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="patient_profile")


class AuthSession(Base):
    """Refresh-token session. Rotated on every refresh."""

    __tablename__ = "auth_sessions"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    refresh_token_hash = Column(String(255), nullable=False)
    status = Column(String(20), default=SESSION_ACTIVE, nullable=False)  # active, revoked, rotated
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    ip = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="sessions")


class Consultation(Base):
    __tablename__ = "consultations"

    id = Column(String(36), primary_key=True, default=generate_id)
    doctor_user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    patient_user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(
        String(20), default=CONSULTATION_DRAFT, nullable=False
    )  # draft, in_progress, closed
    started_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    summary = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    doctor = relationship("User", foreign_keys=[doctor_user_id])
    patient = relationship("User", foreign_keys=[patient_user_id])

    __table_args__ = (
        Index("ix_consultations_pair_status", "doctor_user_id", "patient_user_id", "status"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=generate_id)
    action = Column(String(20), nullable=False)  # READ, WRITE
    resource_type = Column(String(100), nullable=False)
    resource_id = Column(String(100), nullable=False)
    actor_id = Column(String(36), nullable=True)
    actor_role = Column(String(20), nullable=True)
    trace_id = Column(String(100), nullable=True)
    ip = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
