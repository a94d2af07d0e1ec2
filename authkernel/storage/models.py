from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False
    auth_provider: str = "local"
    auth_provider_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class Session:
    """A refresh grant bound to one device, revocable on its own."""

    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=now + ttl,
            created_at=now,
            last_used_at=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_active(self, now: datetime | None = None) -> bool:
        return self.expires_at > (now or utcnow())


@dataclass
class EmailVerificationToken:
    token: str
    user_id: str
    email: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    token: str
    user_id: str
    email: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False


@dataclass
class PasswordRecord:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=utcnow)
