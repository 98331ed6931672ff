from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .shared.validators import normalize_email


# Auth Schemas
class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8)
    role: str = Field(..., pattern="^(patient|doctor|admin)$")
    displayName: Optional[str] = Field(None, max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return normalize_email(v)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return normalize_email(v)


class RefreshRequest(BaseModel):
    refreshToken: str = Field(..., min_length=1)


class AuthUser(BaseModel):
    id: str
    role: str
    email: str


class TokenPair(BaseModel):
    accessToken: str
    refreshToken: str


class AuthResponse(TokenPair):
    user: AuthUser


# User Schemas
class UserMeResponse(BaseModel):
    id: str
    role: str
    email: str
    displayName: Optional[str] = None
    status: str
    createdAt: Optional[datetime] = None


class UserMeUpdate(BaseModel):
    displayName: Optional[str] = Field(None, max_length=255)


class UserSummary(BaseModel):
    id: str
    role: str
    displayName: Optional[str] = None


# Consultation Schemas
class ConsultationCreate(BaseModel):
    patientUserId: str


class ConsultationClose(BaseModel):
    summary: Optional[str] = None
    notes: Optional[str] = None


class ConsultationResponse(BaseModel):
    id: str
    doctorUserId: str
    patientUserId: str
    status: str
    startedAt: Optional[datetime] = None
    closedAt: Optional[datetime] = None
    summary: Optional[str] = None
    notes: Optional[str] = None
    createdAt: Optional[datetime] = None
