import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..clock import SystemClock, get_clock
from ..config import AUTH_RATE_LIMIT, AUTH_RATE_LIMIT_WINDOW_SECONDS, JWT_REFRESH_TTL_SECONDS
from ..database import get_db
from ..models import (
    AUDIT_WRITE,
    ROLE_ADMIN,
    ROLE_DOCTOR,
    ROLE_PATIENT,
    SESSION_ACTIVE,
    SESSION_REVOKED,
    SESSION_ROTATED,
    USER_DISABLED,
    AuthSession,
    DoctorProfile,
    PatientProfile,
    User,
    generate_id,
)
from ..rate_limiter import client_ip, create_rate_limiter
from ..request_context import get_trace_id
from ..schemas import (
    AuthResponse,
    AuthUser,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenPair,
    UserMeResponse,
)
from ..security_utils import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_password,
    verify_password,
)
from ..services.audit_service import AuditService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"

register_rate_limiter = create_rate_limiter(
    limit=AUTH_RATE_LIMIT, window_seconds=AUTH_RATE_LIMIT_WINDOW_SECONDS, key_prefix="auth_register"
)
login_rate_limiter = create_rate_limiter(
    limit=AUTH_RATE_LIMIT, window_seconds=AUTH_RATE_LIMIT_WINDOW_SECONDS, key_prefix="auth_login"
)


def _open_session(
    db: Session, user: User, clock: SystemClock, request: Request, session_id: Optional[str] = None
) -> TokenPair:
    """Issue a token pair and persist the hashed refresh token as a new session"""
    session_id = session_id or generate_id()
    access_token = create_access_token(user.id, user.role)
    refresh_token = create_refresh_token(user.id, user.role, session_id)

    db.add(
        AuthSession(
            id=session_id,
            user_id=user.id,
            refresh_token_hash=hash_password(refresh_token),
            status=SESSION_ACTIVE,
            expires_at=clock.now() + timedelta(seconds=JWT_REFRESH_TTL_SECONDS),
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    )
    return TokenPair(accessToken=access_token, refreshToken=refresh_token)


def _auth_response(user: User, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user=AuthUser(id=user.id, role=user.role, email=user.email),
        accessToken=tokens.accessToken,
        refreshToken=tokens.refreshToken,
    )


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(
    data: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock),
    _: None = Depends(register_rate_limiter),
):
    """Create a patient or doctor account and sign it in"""
    if data.role == ROLE_ADMIN:
        raise HTTPException(status_code=422, detail="Role not allowed for self-registration")

    if db.query(User).filter(User.email == data.email).first():
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        email=data.email,
        password_hash=hash_password(data.password),
        role=data.role,
        display_name=data.displayName,
    )
    if data.role == ROLE_DOCTOR:
        user.doctor_profile = DoctorProfile()
    elif data.role == ROLE_PATIENT:
        user.patient_profile = PatientProfile()
    db.add(user)

    try:
        db.flush()
        tokens = _open_session(db, user, clock, request)
        db.commit()
    except IntegrityError as e:
        # Email taken between check and insert
        db.rollback()
        raise HTTPException(status_code=409, detail="Email already registered") from e

    db.refresh(user)
    logger.info(f"🆕 Registered {user.role} {user.id}")
    AuditService(db).log(
        AUDIT_WRITE,
        "User",
        user.id,
        actor=user,
        trace_id=get_trace_id(),
        ip=client_ip(request),
        metadata={"event": "user_registered"},
    )
    return _auth_response(user, tokens)


@router.post("/login", response_model=AuthResponse)
async def login(
    data: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock),
    _: None = Depends(login_rate_limiter),
):
    user = db.query(User).filter(User.email == data.email).first()
    if not user:
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS_MESSAGE)

    if user.status == USER_DISABLED:
        raise HTTPException(status_code=403, detail="User disabled")

    if not verify_password(data.password, user.password_hash):
        logger.warning(f"⚠️ Failed login for user {user.id}")
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS_MESSAGE)

    tokens = _open_session(db, user, clock, request)
    db.commit()
    return _auth_response(user, tokens)


@router.post("/refresh", response_model=TokenPair)
async def refresh(
    data: RefreshRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock),
):
    """Rotate a refresh token: the presented session is retired and a new one issued"""
    payload = decode_refresh_token(data.refreshToken)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    session = db.query(AuthSession).filter(AuthSession.id == payload["sid"]).first()
    if not session or session.user_id != payload["sub"]:
        raise HTTPException(status_code=401, detail="Invalid session")

    if session.status != SESSION_ACTIVE or session.revoked_at:
        raise HTTPException(status_code=401, detail="Session revoked")

    now = clock.now()
    if session.expires_at <= now:
        raise HTTPException(status_code=401, detail="Session expired")

    if session.user.status == USER_DISABLED:
        raise HTTPException(status_code=403, detail="User disabled")

    if not verify_password(data.refreshToken, session.refresh_token_hash):
        raise HTTPException(status_code=401, detail="Invalid session")

    session.status = SESSION_ROTATED
    session.revoked_at = now
    session.last_used_at = now
    tokens = _open_session(db, session.user, clock, request)
    db.commit()
    return tokens


@router.post("/logout", status_code=204)
async def logout(
    data: RefreshRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock),
):
    payload = decode_refresh_token(data.refreshToken)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    if payload["sub"] != current_user.id:
        raise HTTPException(status_code=403, detail="Session does not belong to current user")

    session = db.query(AuthSession).filter(AuthSession.id == payload["sid"]).first()
    if session and session.user_id == current_user.id and session.status == SESSION_ACTIVE:
        session.status = SESSION_REVOKED
        session.revoked_at = clock.now()
        db.commit()
        logger.info(f"🔒 Session {session.id} revoked")


@router.get("/me", response_model=UserMeResponse)
async def me(current_user: User = Depends(get_current_user)):
    return UserMeResponse(
        id=current_user.id,
        role=current_user.role,
        email=current_user.email,
        displayName=current_user.display_name,
        status=current_user.status,
        createdAt=current_user.created_at,
    )
