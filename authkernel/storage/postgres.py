from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.common import (
    ensure_aware,
    filter_user_fields,
    generate_uuid,
    is_uuid,
    normalize_email,
    safe_row_value,
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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        display_name TEXT,
        avatar_url TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        auth_provider TEXT NOT NULL DEFAULT 'local',
        auth_provider_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token TEXT NOT NULL UNIQUE,
        user_agent TEXT,
        ip_address TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS email_verification_token (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
]


class PostgresStore:
    """Postgres-backed credential store.

    One-shot token consumption and refresh token rotation are single
    statements (``DELETE/UPDATE ... RETURNING``) so concurrent requests cannot
    both win.
    """

    def __init__(self, dsn: str, fs_root: str, *, pool: Any = None) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Any) -> User:
        created_at = ensure_aware(safe_row_value(row, "created_at")) or utcnow()
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=safe_row_value(row, "first_name"),
            last_name=safe_row_value(row, "last_name"),
            display_name=safe_row_value(row, "display_name"),
            avatar_url=safe_row_value(row, "avatar_url"),
            email_verified=bool(safe_row_value(row, "email_verified", False)),
            auth_provider=safe_row_value(row, "auth_provider", "local") or "local",
            auth_provider_id=safe_row_value(row, "auth_provider_id"),
            created_at=created_at,
            updated_at=ensure_aware(safe_row_value(row, "updated_at")) or created_at,
            last_login_at=ensure_aware(safe_row_value(row, "last_login_at")),
        )

    @staticmethod
    def _session_from_row(row: Any) -> Session:
        created_at = ensure_aware(safe_row_value(row, "created_at")) or utcnow()
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=created_at,
            last_used_at=ensure_aware(safe_row_value(row, "last_used_at")) or created_at,
            user_agent=safe_row_value(row, "user_agent"),
            ip_address=safe_row_value(row, "ip_address"),
        )

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
        now = utcnow()
        user = User(
            id=generate_uuid(),
            email=normalize_email(email),
            first_name=first_name,
            last_name=last_name,
            display_name=display_name,
            email_verified=email_verified,
            auth_provider=auth_provider,
            auth_provider_id=auth_provider_id,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, display_name,
                        email_verified, auth_provider, auth_provider_id, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        first_name,
                        last_name,
                        display_name,
                        email_verified,
                        auth_provider,
                        auth_provider_id,
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate("email")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        changes = filter_user_fields(fields)
        if not changes:
            return self.get_user(user_id)
        # column names come from a fixed allow-list
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = [*changes.values(), user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._user_from_row(row) if row else None

    def touch_last_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_user(user_id)

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return PasswordRecord(
            user_id=str(row["user_id"]),
            password_hash=str(row["password_hash"]),
            password_algo=str(row["password_algo"]),
            updated_at=ensure_aware(safe_row_value(row, "updated_at")) or utcnow(),
        )

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM app_user").fetchone()
        return int(row["total"]) if row else 0

    def count_verified_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM app_user WHERE email_verified"
            ).fetchone()
        return int(row["total"]) if row else 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, user_agent, ip_address,
                        expires_at, created_at, last_used_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.user_agent,
                        session.ip_address,
                        session.expires_at,
                        session.created_at,
                        session.last_used_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_user(session.user_id)
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate("refresh_token")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if not is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_token(
        self, refresh_token: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s AND expires_at > %s",
                (refresh_token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY last_used_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: str, at: datetime) -> None:
        if not is_uuid(session_id):
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_used_at = %s WHERE id = %s",
                (at, session_id),
            )

    def replace_refresh_token(
        self, session_id: str, old_token: str, new_token: str
    ) -> bool:
        if not is_uuid(session_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET refresh_token = %s
                WHERE id = %s AND refresh_token = %s
                RETURNING id
                """,
                (new_token, session_id, old_token),
            ).fetchone()
        return row is not None

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        if not is_uuid(session_id):
            return False
        with self._connect() as conn:
            if user_id is None:
                row = conn.execute(
                    "DELETE FROM auth_session WHERE id = %s RETURNING id", (session_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "DELETE FROM auth_session WHERE id = %s AND user_id = %s RETURNING id",
                    (session_id, user_id),
                ).fetchone()
        return row is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount or 0

    def count_active_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM auth_session WHERE expires_at > %s", (now,)
            ).fetchone()
        return int(row["total"]) if row else 0

    # one-shot tokens
    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_verification_token (token, user_id, email, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.token, token.user_id, token.email, token.expires_at, token.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_user(token.user_id)
        return token

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM email_verification_token
                WHERE token = %s AND expires_at > %s
                RETURNING *
                """,
                (token, now),
            ).fetchone()
        if not row:
            return None
        return EmailVerificationToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            email=row["email"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(safe_row_value(row, "created_at")) or utcnow(),
        )

    def delete_email_verification_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM email_verification_token WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount or 0

    def create_password_reset_token(
        self, token: PasswordResetToken
    ) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (token, user_id, email, expires_at, created_at, used)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        token.user_id,
                        token.email,
                        token.expires_at,
                        token.created_at,
                        token.used,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation.missing_user(token.user_id)
        return token

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE
                WHERE token = %s AND used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (token, now),
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            email=row["email"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(safe_row_value(row, "created_at")) or utcnow(),
            used=True,
        )

    def purge_expired(self, now: datetime) -> int:
        removed = 0
        with self._connect() as conn:
            for statement in (
                "DELETE FROM auth_session WHERE expires_at <= %s",
                "DELETE FROM email_verification_token WHERE expires_at <= %s",
                "DELETE FROM password_reset_token WHERE expires_at <= %s OR used",
            ):
                cur = conn.execute(statement, (now,))
                removed += cur.rowcount or 0
        return removed
