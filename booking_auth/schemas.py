# booking_auth/schemas.py
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------- requests ----------
class RegisterRequest(CamelModel):
    email: EmailStr
    full_name: str = Field(min_length=1, max_length=200)
    password: str = Field(min_length=1)


class LoginRequest(CamelModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(min_length=1)


class ForgotPasswordRequest(CamelModel):
    email: str = Field(min_length=1)


class ResetPasswordRequest(CamelModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=1)


class VerifyEmailRequest(CamelModel):
    token: str = Field(min_length=1)


class ResendVerificationRequest(CamelModel):
    email: str = Field(min_length=1)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=1)


# ---------- responses ----------
class UserProfile(CamelModel):
    id: str
    email: str
    full_name: str
    role: str
    email_verified: bool
    locked: bool
    last_login: datetime | None = None
    created_at: datetime
    profile: dict[str, Any] = Field(default_factory=dict)


class AuthResponse(CamelModel):
    user: UserProfile
    token: str
    refresh_token: str


class TokenPair(CamelModel):
    token: str
    refresh_token: str


class ValidateResponse(CamelModel):
    user: UserProfile
    valid: bool = True


class MessageResponse(CamelModel):
    message: str


class CountResponse(CamelModel):
    message: str
    revoked: int


class SessionInfo(CamelModel):
    id: str
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime
    expires_at: datetime


class AuditEntry(CamelModel):
    id: str
    event_type: str
    severity: str
    account_id: str | None = None
    email: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    resolved: bool


class SecurityMetrics(CamelModel):
    total_events: int
    failed_logins: int
    successful_logins: int
    password_resets: int
    suspicious_activities: int
    blocked_attempts: int
    recent_events: list[AuditEntry]


class ResolveResponse(CamelModel):
    id: str
    resolved: bool
