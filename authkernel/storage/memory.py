from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.common import (
    ensure_aware,
    filter_user_fields,
    generate_uuid,
    normalize_email,
)
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    EmailVerificationToken,
    PasswordRecord,
    PasswordResetToken,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory credential store persisted to a JSON file under ``fs_root``.

    Used for local development and tests. Records handed out are copies, so
    callers cannot mutate stored state without going through the store.
    """

    def __init__(self, fs_root: str = "/tmp/authkernel") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.sessions: Dict[str, Session] = {}
        self.verification_tokens: Dict[str, EmailVerificationToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        return ensure_aware(datetime.fromisoformat(raw))

    # user / auth
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
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation.duplicate("email")
            now = utcnow()
            user = User(
                id=generate_uuid(),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                display_name=display_name,
                email_verified=email_verified,
                auth_provider=auth_provider,
                auth_provider_id=auth_provider_id,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        changes = filter_user_fields(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def touch_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at
            self._persist_state()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation.missing_user(user_id)
            self.credentials[user_id] = PasswordRecord(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def count_verified_users(self) -> int:
        with self._data_lock:
            return sum(1 for u in self.users.values() if u.email_verified)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation.missing_user(session.user_id)
            if any(
                s.refresh_token == session.refresh_token for s in self.sessions.values()
            ):
                raise ConstraintViolation.duplicate("refresh_token")
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_token(
        self, refresh_token: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.refresh_token == refresh_token and sess.expires_at > now:
                    return replace(sess)
            return None

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            results = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.expires_at > now
            ]
        return sorted(results, key=lambda s: s.last_used_at, reverse=True)

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_used_at = at
            self._persist_state()

    def replace_refresh_token(
        self, session_id: str, old_token: str, new_token: str
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            # compare-and-swap: a concurrent rotation already won
            if not sess or sess.refresh_token != old_token:
                return False
            sess.refresh_token = new_token
            self._persist_state()
            return True

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or (user_id is not None and sess.user_id != user_id):
                return False
            self.sessions.pop(session_id, None)
            self._persist_state()
            return True

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def count_active_sessions(self, now: datetime) -> int:
        with self._data_lock:
            return sum(1 for s in self.sessions.values() if s.expires_at > now)

    # one-shot tokens
    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation.missing_user(token.user_id)
            self.verification_tokens[token.token] = replace(token)
            self._persist_state()
            return replace(token)

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            if not record or record.expires_at <= now:
                return None
            self.verification_tokens.pop(token, None)
            self._persist_state()
            return record

    def delete_email_verification_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [
                key
                for key, rec in self.verification_tokens.items()
                if rec.user_id == user_id
            ]
            for key in stale:
                self.verification_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def create_password_reset_token(
        self, token: PasswordResetToken
    ) -> PasswordResetToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation.missing_user(token.user_id)
            self.reset_tokens[token.token] = replace(token)
            self._persist_state()
            return replace(token)

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if not record or record.used or record.expires_at <= now:
                return None
            record.used = True
            self._persist_state()
            return replace(record)

    def purge_expired(self, now: datetime) -> int:
        with self._data_lock:
            expired_sessions = [
                sid for sid, s in self.sessions.items() if s.expires_at <= now
            ]
            expired_verification = [
                key for key, t in self.verification_tokens.items() if t.expires_at <= now
            ]
            expired_reset = [
                key
                for key, t in self.reset_tokens.items()
                if t.expires_at <= now or t.used
            ]
            for sid in expired_sessions:
                self.sessions.pop(sid, None)
            for key in expired_verification:
                self.verification_tokens.pop(key, None)
            for key in expired_reset:
                self.reset_tokens.pop(key, None)
            removed = len(expired_sessions) + len(expired_verification) + len(expired_reset)
            if removed:
                self._persist_state()
            return removed

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": rec.user_id,
                    "password_hash": rec.password_hash,
                    "password_algo": rec.password_algo,
                    "updated_at": self._serialize_datetime(rec.updated_at),
                }
                for rec in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "verification_tokens": [
                {
                    "token": t.token,
                    "user_id": t.user_id,
                    "email": t.email,
                    "expires_at": self._serialize_datetime(t.expires_at),
                    "created_at": self._serialize_datetime(t.created_at),
                }
                for t in self.verification_tokens.values()
            ],
            "reset_tokens": [
                {
                    "token": t.token,
                    "user_id": t.user_id,
                    "email": t.email,
                    "expires_at": self._serialize_datetime(t.expires_at),
                    "created_at": self._serialize_datetime(t.created_at),
                    "used": t.used,
                }
                for t in self.reset_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: PasswordRecord(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", ""),
                updated_at=self._deserialize_datetime(entry.get("updated_at")) or utcnow(),
            )
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.verification_tokens = {
            t["token"]: EmailVerificationToken(
                token=t["token"],
                user_id=t["user_id"],
                email=t["email"],
                expires_at=self._deserialize_datetime(t["expires_at"]),
                created_at=self._deserialize_datetime(t.get("created_at")) or utcnow(),
            )
            for t in data.get("verification_tokens", [])
        }
        self.reset_tokens = {
            t["token"]: PasswordResetToken(
                token=t["token"],
                user_id=t["user_id"],
                email=t["email"],
                expires_at=self._deserialize_datetime(t["expires_at"]),
                created_at=self._deserialize_datetime(t.get("created_at")) or utcnow(),
                used=t.get("used", False),
            )
            for t in data.get("reset_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "display_name": user.display_name,
            "avatar_url": user.avatar_url,
            "email_verified": user.email_verified,
            "auth_provider": user.auth_provider,
            "auth_provider_id": user.auth_provider_id,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        created_at = self._deserialize_datetime(data.get("created_at")) or utcnow()
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            display_name=data.get("display_name"),
            avatar_url=data.get("avatar_url"),
            email_verified=data.get("email_verified", False),
            auth_provider=data.get("auth_provider", "local"),
            auth_provider_id=data.get("auth_provider_id"),
            created_at=created_at,
            updated_at=self._deserialize_datetime(data.get("updated_at")) or created_at,
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
        }

    def _deserialize_session(self, data: dict) -> Session:
        created_at = self._deserialize_datetime(data.get("created_at")) or utcnow()
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=created_at,
            last_used_at=self._deserialize_datetime(data.get("last_used_at")) or created_at,
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )
