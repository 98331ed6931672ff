import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_roles
from ..clock import SystemClock, get_clock
from ..database import get_db
from ..models import (
    AUDIT_WRITE,
    CONSULTATION_CLOSED,
    CONSULTATION_DRAFT,
    CONSULTATION_IN_PROGRESS,
    ROLE_ADMIN,
    ROLE_DOCTOR,
    ROLE_PATIENT,
    Consultation,
    User,
)
from ..request_context import get_trace_id
from ..schemas import ConsultationClose, ConsultationCreate, ConsultationResponse
from ..services.audit_service import AuditService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/consultations", tags=["Consultations"])


def _to_response(consultation: Consultation) -> ConsultationResponse:
    return ConsultationResponse(
        id=consultation.id,
        doctorUserId=consultation.doctor_user_id,
        patientUserId=consultation.patient_user_id,
        status=consultation.status,
        startedAt=consultation.started_at,
        closedAt=consultation.closed_at,
        summary=consultation.summary,
        notes=consultation.notes,
        createdAt=consultation.created_at,
    )


def _get_owned_consultation(db: Session, consultation_id: str, doctor: User) -> Consultation:
    consultation = db.query(Consultation).filter(Consultation.id == consultation_id).first()
    if not consultation:
        raise HTTPException(status_code=404, detail="Consultation not found")
    if consultation.doctor_user_id != doctor.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return consultation


@router.post("", response_model=ConsultationResponse, status_code=201)
async def create_consultation(
    data: ConsultationCreate,
    current_user: User = Depends(require_roles(ROLE_DOCTOR)),
    db: Session = Depends(get_db),
):
    """Open a draft consultation with a patient"""
    patient = db.query(User).filter(User.id == data.patientUserId).first()
    if not patient or patient.role != ROLE_PATIENT or not patient.patient_profile:
        raise HTTPException(status_code=404, detail="Patient not found")

    consultation = Consultation(
        doctor_user_id=current_user.id,
        patient_user_id=patient.id,
        status=CONSULTATION_DRAFT,
    )
    db.add(consultation)
    db.commit()
    db.refresh(consultation)

    AuditService(db).log(
        AUDIT_WRITE,
        "Consultation",
        consultation.id,
        actor=current_user,
        trace_id=get_trace_id(),
        metadata={"event": "consultation_created"},
    )
    return _to_response(consultation)


@router.post("/{consultation_id}/start", response_model=ConsultationResponse)
async def start_consultation(
    consultation_id: str,
    current_user: User = Depends(require_roles(ROLE_DOCTOR)),
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock),
):
    consultation = _get_owned_consultation(db, consultation_id, current_user)
    if consultation.status == CONSULTATION_CLOSED:
        raise HTTPException(status_code=409, detail="Consultation already closed")

    if consultation.status != CONSULTATION_IN_PROGRESS:
        consultation.status = CONSULTATION_IN_PROGRESS
        consultation.started_at = clock.now()
        db.commit()
        db.refresh(consultation)
        logger.info(f"🩺 Consultation {consultation.id} started")
    return _to_response(consultation)


@router.post("/{consultation_id}/close", response_model=ConsultationResponse)
async def close_consultation(
    consultation_id: str,
    data: Optional[ConsultationClose] = None,
    current_user: User = Depends(require_roles(ROLE_DOCTOR)),
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock),
):
    consultation = _get_owned_consultation(db, consultation_id, current_user)
    if consultation.status == CONSULTATION_CLOSED:
        raise HTTPException(status_code=409, detail="Consultation already closed")

    now = clock.now()
    consultation.status = CONSULTATION_CLOSED
    consultation.closed_at = now
    if consultation.started_at is None:
        consultation.started_at = now
    if data:
        if data.summary is not None:
            consultation.summary = data.summary
        if data.notes is not None:
            consultation.notes = data.notes
    db.commit()
    db.refresh(consultation)

    AuditService(db).log(
        AUDIT_WRITE,
        "Consultation",
        consultation.id,
        actor=current_user,
        trace_id=get_trace_id(),
        metadata={"event": "consultation_closed"},
    )
    return _to_response(consultation)


@router.get("/active", response_model=Optional[ConsultationResponse])
async def get_active_consultation(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """The actor's newest in-progress consultation, or null"""
    if current_user.role == ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Forbidden")

    query = db.query(Consultation).filter(Consultation.status == CONSULTATION_IN_PROGRESS)
    if current_user.role == ROLE_DOCTOR:
        query = query.filter(Consultation.doctor_user_id == current_user.id)
    else:
        query = query.filter(Consultation.patient_user_id == current_user.id)

    consultation = query.order_by(Consultation.started_at.desc()).first()
    return _to_response(consultation) if consultation else None


@router.get("/{consultation_id}", response_model=ConsultationResponse)
async def get_consultation(
    consultation_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    consultation = db.query(Consultation).filter(Consultation.id == consultation_id).first()
    if not consultation:
        raise HTTPException(status_code=404, detail="Consultation not found")
    if current_user.id not in (consultation.doctor_user_id, consultation.patient_user_id):
        raise HTTPException(status_code=403, detail="Forbidden")
    return _to_response(consultation)
