from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from authkernel.logging import get_correlation_id


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class CredentialsRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)


class RegisterRequest(CredentialsRequest):
    password: str = Field(..., min_length=8, max_length=1024)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    password: str = Field(..., min_length=8, max_length=1024)


class UserResponse(BaseModel):
    id: str
    email: str
    email_verified: bool = False


class RegistrationResponse(UserResponse):
    requires_verification: bool
    verification_sent: bool


class SessionSummaryResponse(BaseModel):
    id: str
    created_at: datetime
    user_agent: str = ""
    expires_at: Optional[datetime] = None
    current: bool = False
