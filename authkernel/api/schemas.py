from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authkernel.service.constants import (
    DISPLAY_NAME_MAX_LENGTH,
    FIRST_NAME_MAX_LENGTH,
    LAST_NAME_MAX_LENGTH,
    PASSWORD_MAX_LENGTH,
)
from authkernel.storage.models import Session, User


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# Passwords are only length-capped here; the strength policy is enforced by
# the service so violations come back as 400 with the list of failed rules.
_PASSWORD_FIELD = dict(min_length=1, max_length=PASSWORD_MAX_LENGTH * 4)


class _EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return validate_email(value)


class RegisterRequest(_EmailBody):
    password: str = Field(..., **_PASSWORD_FIELD)
    confirm_password: str = Field(..., **_PASSWORD_FIELD)
    first_name: Optional[str] = Field(default=None, max_length=FIRST_NAME_MAX_LENGTH)
    last_name: Optional[str] = Field(default=None, max_length=LAST_NAME_MAX_LENGTH)


class LoginRequest(_EmailBody):
    password: str = Field(..., **_PASSWORD_FIELD)
    remember_me: bool = False


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class EmailRequest(_EmailBody):
    pass


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., **_PASSWORD_FIELD)
    confirm_password: str = Field(..., **_PASSWORD_FIELD)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., **_PASSWORD_FIELD)
    new_password: str = Field(..., **_PASSWORD_FIELD)
    confirm_password: str = Field(..., **_PASSWORD_FIELD)


class UpdateProfileRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=FIRST_NAME_MAX_LENGTH)
    last_name: Optional[str] = Field(default=None, max_length=LAST_NAME_MAX_LENGTH)
    display_name: Optional[str] = Field(default=None, max_length=DISPLAY_NAME_MAX_LENGTH)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool
    auth_provider: str = "local"
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            display_name=user.display_name,
            avatar_url=user.avatar_url,
            email_verified=user.email_verified,
            auth_provider=user.auth_provider,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login_at=user.last_login_at,
        )


class SessionResponse(BaseModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            created_at=session.created_at,
            last_used_at=session.last_used_at,
            expires_at=session.expires_at,
            current=session.id == current_id,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse
    session_id: str


class MessageResponse(BaseModel):
    message: str


class CountResponse(BaseModel):
    message: str
    count: int


class StatsResponse(BaseModel):
    total_users: int
    active_sessions: int
    verified_users: int


class EmailExistsResponse(BaseModel):
    exists: bool
