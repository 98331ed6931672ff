"""Chat domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ChatUser(BaseModel):
    id: str
    email: str
    displayName: Optional[str] = None


class ChatPolicyResponse(BaseModel):
    threadId: str
    patientCanMessage: bool
    allowedSchedule: Optional[dict[str, Any]] = None
    dailyLimit: int
    burstLimit: int
    burstWindowSeconds: int
    requireRecentConsultation: bool
    recentConsultationWindowHours: int
    closedByDoctor: bool
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class ChatThreadResponse(BaseModel):
    id: str
    doctorUserId: str
    patientUserId: str
    lastMessageAt: Optional[datetime] = None
    createdAt: datetime
    updatedAt: datetime
    policy: Optional[ChatPolicyResponse] = None
    doctor: ChatUser
    patient: ChatUser


class ChatMessageResponse(BaseModel):
    id: str
    threadId: str
    senderUserId: str
    senderRole: Literal["doctor", "patient"]
    kind: Literal["text", "system"]
    text: Optional[str] = None
    clientMessageId: Optional[str] = None
    contextConsultationId: Optional[str] = None
    createdAt: datetime
    sender: Optional[ChatUser] = None


class PageInfo(BaseModel):
    hasNextPage: bool
    endCursor: Optional[str] = None


class MessagesResponse(BaseModel):
    items: list[ChatMessageResponse]
    pageInfo: PageInfo


class MessageCreate(BaseModel):
    """Schema for sending a message over HTTP (mirrors the chat:send payload)"""

    kind: Literal["text"] = "text"
    text: str = Field(..., min_length=1, max_length=4000)
    clientMessageId: Optional[str] = Field(None, max_length=255)


class PolicyUpdate(BaseModel):
    """Schema for a doctor's partial policy update. Only supplied fields change."""

    patientCanMessage: Optional[bool] = None
    dailyLimit: Optional[int] = Field(None, ge=1)
    burstLimit: Optional[int] = Field(None, ge=1)
    burstWindowSeconds: Optional[int] = Field(None, ge=1)
    requireRecentConsultation: Optional[bool] = None
    recentConsultationWindowHours: Optional[int] = Field(None, ge=1)
    closedByDoctor: Optional[bool] = None
    allowedSchedule: Optional[dict[str, Any]] = None


class PolicyCheckResponse(BaseModel):
    allowed: bool
    code: Optional[str] = None
