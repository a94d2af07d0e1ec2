"""Storage contract and helpers shared between the memory and postgres stores.

Every method is synchronous. Callers in the service layer treat the store as
the single source of truth for users, sessions and one-shot tokens.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

from authkernel.storage.models import (
    EmailVerificationToken,
    PasswordRecord,
    PasswordResetToken,
    Session,
    User,
)

# Columns a profile update may touch; anything else is ignored.
UPDATABLE_USER_FIELDS = frozenset(
    {"first_name", "last_name", "display_name", "avatar_url", "email_verified"}
)


class CredentialStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        display_name: Optional[str] = None,
        email_verified: bool = False,
        auth_provider: str = "local",
        auth_provider_id: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def touch_last_login(self, user_id: str, at: datetime) -> None: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]: ...

    def count_users(self) -> int: ...

    def count_verified_users(self) -> int: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(
        self, refresh_token: str, now: datetime
    ) -> Optional[Session]: ...

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> None: ...

    def replace_refresh_token(
        self, session_id: str, old_token: str, new_token: str
    ) -> bool: ...

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def count_active_sessions(self, now: datetime) -> int: ...

    # one-shot tokens
    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken: ...

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]: ...

    def delete_email_verification_tokens(self, user_id: str) -> int: ...

    def create_password_reset_token(
        self, token: PasswordResetToken
    ) -> PasswordResetToken: ...

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def purge_expired(self, now: datetime) -> int: ...


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and look up lower-cased."""
    return (email or "").strip().lower()


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def filter_user_fields(fields: dict) -> dict:
    return {k: v for k, v in fields.items() if k in UPDATABLE_USER_FIELDS}


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())


def is_uuid(value: Optional[str]) -> bool:
    """Ids that cannot be UUIDs never match a row in a UUID column."""
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True
