from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.constants import (
    DISPLAY_NAME_MAX_LENGTH,
    FIRST_NAME_MAX_LENGTH,
    LAST_NAME_MAX_LENGTH,
    MSG_ALREADY_VERIFIED,
    MSG_EMAIL_EXISTS,
    MSG_EMAIL_NOT_VERIFIED,
    MSG_INVALID_CREDENTIALS,
    MSG_INVALID_ONE_SHOT,
    MSG_USER_NOT_FOUND,
    MSG_VERIFICATION_SEND_FAILED,
    MSG_WEAK_PASSWORD,
    MSG_WRONG_CURRENT_PASSWORD,
    REGISTRATION_USER_AGENT,
    VERIFICATION_USER_AGENT,
)
from authkernel.service.email import Notifier
from authkernel.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ServerError,
    ServiceError,
)
from authkernel.service.passwords import PasswordHasher, check_strength
from authkernel.service.sessions import SessionManager
from authkernel.service.tokens import (
    TokenIssuer,
    TokenPair,
    generate_opaque_token,
    parse_duration,
)
from authkernel.storage.common import CredentialStore, normalize_email
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    Session,
    User,
)

logger = get_logger(__name__)

_UNSET = object()


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    session: Session


@dataclass
class AuthStats:
    total_users: int
    active_sessions: int
    verified_users: int


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


def compose_display_name(
    first_name: Optional[str], last_name: Optional[str]
) -> Optional[str]:
    parts = [p.strip() for p in (first_name, last_name) if p and p.strip()]
    return " ".join(parts) or None


class AuthService:
    """Account operations: registration, login, verification, password flows.

    Store calls are synchronous; password hashing and SMTP delivery run in
    worker threads so the event loop stays responsive. Service errors pass
    through unchanged, anything unexpected is logged and re-raised as a
    generic ``ServerError``.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        sessions: SessionManager,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self.sessions = sessions
        self.notifier = notifier
        self.settings = settings
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return self.issuer.clock()

    def _unexpected(self, operation: str, exc: Exception, message: str) -> ServerError:
        self.logger.error(
            f"{operation}_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return ServerError(message)

    def _frontend_link(self, route: str, token: str) -> str:
        base = self.settings.frontend_url.rstrip("/")
        return f"{base}/{route}?token={quote(token)}"

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify(self, password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, password_hash)

    async def _burn_verify(self, password: str) -> None:
        """Spend a verify on a throwaway hash so unknown emails take as long."""
        if self._dummy_hash is None:
            self._dummy_hash = await self._hash(generate_opaque_token())
        await self._verify(password, self._dummy_hash)

    def _require_strong(self, password: str) -> None:
        strength = check_strength(password)
        if not strength.valid:
            raise BadRequestError(
                f"{MSG_WEAK_PASSWORD}: {'; '.join(strength.errors)}",
                detail={"errors": strength.errors},
            )

    # notifications
    async def _send_verification(self, user: User) -> bool:
        """Issue a verification token and mail it; failure to send is fatal."""
        if not self.notifier.is_configured:
            self.logger.warning("verification_email_skipped", user_id=user.id)
            return False
        ttl = parse_duration(self.settings.email_verification_expiry)
        record = EmailVerificationToken(
            token=generate_opaque_token(),
            user_id=user.id,
            email=user.email,
            expires_at=self.issuer.compute_expiry(self.settings.email_verification_expiry),
            created_at=self._now(),
        )
        self.store.create_email_verification_token(record)
        ttl_hours = math.ceil(ttl.total_seconds() / 3600) if ttl else 24
        sent = await asyncio.to_thread(
            self.notifier.send_verification,
            user.email,
            record.token,
            self._frontend_link("verify-email", record.token),
            ttl_hours,
            name=user.first_name,
        )
        if not sent:
            self.logger.error("verification_email_failed", user_id=user.id)
            raise ServerError(MSG_VERIFICATION_SEND_FAILED)
        self.logger.info("verification_email_sent", user_id=user.id)
        return True

    async def _send_welcome(self, user: User) -> None:
        if not self.notifier.is_configured:
            return
        try:
            sent = await asyncio.to_thread(
                self.notifier.send_welcome,
                user.email,
                f"{self.settings.frontend_url.rstrip('/')}/dashboard",
                name=user.first_name,
            )
            if not sent:
                self.logger.warning("welcome_email_failed", user_id=user.id)
        except Exception as exc:
            self.logger.warning("welcome_email_failed", user_id=user.id, error=str(exc))

    async def _touch_last_login(self, user_id: str) -> None:
        try:
            self.store.touch_last_login(user_id, self._now())
        except Exception as exc:
            self.logger.warning("last_login_update_failed", user_id=user_id, error=str(exc))

    async def _maybe_rehash(self, user_id: str, password: str, password_hash: str) -> None:
        try:
            if not self.hasher.needs_rehash(password_hash):
                return
            self.store.save_password(user_id, await self._hash(password), self.hasher.algo)
            self.logger.info("password_rehashed", user_id=user_id)
        except Exception as exc:
            self.logger.warning("password_rehash_failed", user_id=user_id, error=str(exc))

    def _start_session(
        self,
        user: User,
        *,
        user_agent: Optional[str],
        ip_address: Optional[str],
        remember_me: bool = False,
    ) -> AuthResult:
        session = self.sessions.create_session(
            user, user_agent=user_agent, ip_address=ip_address, remember_me=remember_me
        )
        return AuthResult(user=user, tokens=self.sessions.issue_tokens(user, session), session=session)

    # registration and login
    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        *,
        user_agent: Optional[str] = REGISTRATION_USER_AGENT,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        try:
            if self.store.get_user_by_email(email):
                raise ConflictError(MSG_EMAIL_EXISTS, detail={"field": "email"})
            self._require_strong(password)
            password_hash = await self._hash(password)
            require_verification = self.settings.email_verification_enabled
            try:
                user = self.store.create_user(
                    email,
                    first_name=first_name,
                    last_name=last_name,
                    display_name=compose_display_name(first_name, last_name),
                    email_verified=not require_verification,
                )
            except ConstraintViolation as exc:
                raise ConflictError(MSG_EMAIL_EXISTS, detail={"field": exc.field}) from exc
            self.store.save_password(user.id, password_hash, self.hasher.algo)
            self.logger.info(
                "user_registered",
                user_id=user.id,
                verification_required=require_verification,
            )

            if require_verification:
                await self._send_verification(user)
            else:
                await self._send_welcome(user)

            return self._start_session(
                user, user_agent=user_agent or REGISTRATION_USER_AGENT, ip_address=ip_address
            )
        except ServiceError:
            raise
        except Exception as exc:
            raise self._unexpected("register", exc, "failed to register user") from exc

    async def login(
        self,
        email: str,
        password: str,
        remember_me: bool = False,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        try:
            user = self.store.get_user_by_email(email)
            record = self.store.get_password_record(user.id) if user else None
            if not user or not record:
                await self._burn_verify(password)
                self.logger.warning("login_failed", reason="unknown_account", email_hash=_email_hash(email))
                raise AuthenticationError(MSG_INVALID_CREDENTIALS)
            if not await self._verify(password, record.password_hash):
                self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
                raise AuthenticationError(MSG_INVALID_CREDENTIALS)
            if self.settings.email_verification_enabled and not user.email_verified:
                self.logger.warning("login_failed", reason="email_not_verified", user_id=user.id)
                raise AuthenticationError(
                    MSG_EMAIL_NOT_VERIFIED, reason="email_not_verified"
                )

            result = self._start_session(
                user, user_agent=user_agent, ip_address=ip_address, remember_me=remember_me
            )
            await self._touch_last_login(user.id)
            await self._maybe_rehash(user.id, password, record.password_hash)
            self.logger.info("login_succeeded", user_id=user.id, session_id=result.session.id)
            return result
        except ServiceError:
            raise
        except Exception as exc:
            raise self._unexpected("login", exc, "failed to log in") from exc

    # sessions
    async def logout(self, session_id: Optional[str]) -> None:
        if self.sessions.revoke_current(session_id):
            self.logger.info("logout", session_id=session_id)

    async def logout_all(self, user_id: str) -> int:
        try:
            return self.sessions.revoke_all(user_id)
        except Exception as exc:
            self.logger.warning("logout_all_failed", user_id=user_id, error=str(exc))
            return 0

    async def refresh_tokens(self, refresh_token: str) -> TokenPair:
        try:
            _, tokens = self.sessions.refresh(refresh_token)
            return tokens
        except ServiceError:
            raise
        except Exception as exc:
            raise self._unexpected("refresh", exc, "failed to refresh tokens") from exc

    async def list_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_active(user_id)

    async def revoke_session(self, session_id: str, user_id: str) -> None:
        self.sessions.revoke(session_id, user_id)

    # email verification
    async def verify_email(
        self,
        token: str,
        *,
        user_agent: Optional[str] = VERIFICATION_USER_AGENT,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        try:
            record = self.store.consume_email_verification_token(token, self._now())
            if not record:
                self.logger.warning("email_verification_invalid_token")
                raise BadRequestError(MSG_INVALID_ONE_SHOT)
            user = self.store.update_user(record.user_id, email_verified=True)
            if not user:
                self.logger.warning("email_verification_missing_user", user_id=record.user_id)
                raise BadRequestError(MSG_INVALID_ONE_SHOT)
            self.store.delete_email_verification_tokens(user.id)
            self.logger.info("email_verified", user_id=user.id)
            await self._send_welcome(user)
            return self._start_session(
                user, user_agent=user_agent or VERIFICATION_USER_AGENT, ip_address=ip_address
            )
        except ServiceError:
            raise
        except Exception as exc:
            raise self._unexpected("verify_email", exc, "failed to verify email") from exc

    async def resend_verification(self, email: str) -> None:
        try:
            user = self.store.get_user_by_email(email)
            if not user:
                raise NotFoundError(MSG_USER_NOT_FOUND)
            if user.email_verified:
                raise BadRequestError(MSG_ALREADY_VERIFIED)
            self.store.delete_email_verification_tokens(user.id)
            await self._send_verification(user)
        except ServiceError:
            raise
        except Exception as exc:
            raise self._unexpected(
                "resend_verification", exc, "failed to resend verification email"
            ) from exc

    # password flows
    async def request_password_reset(self, email: str) -> None:
        """Start a reset; the outcome is never revealed to the caller."""
        if not self.notifier.is_configured:
            self.logger.warning("password_reset_skipped", reason="email_not_configured")
            return
        email = normalize_email(email)
        try:
            user = self.store.get_user_by_email(email)
            token = generate_opaque_token()
            expires_at = self.issuer.compute_expiry(self.settings.password_reset_expiry)
            if not user:
                self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
                return
            self.store.create_password_reset_token(
                PasswordResetToken(
                    token=token,
                    user_id=user.id,
                    email=user.email,
                    expires_at=expires_at,
                    created_at=self._now(),
                )
            )
            ttl = parse_duration(self.settings.password_reset_expiry)
            ttl_minutes = math.ceil(ttl.total_seconds() / 60) if ttl else 30
            sent = await asyncio.to_thread(
                self.notifier.send_password_reset,
                user.email,
                self._frontend_link("reset-password", token),
                ttl_minutes,
            )
            if sent:
                self.logger.info("password_reset_requested", user_id=user.id)
            else:
                self.logger.error("password_reset_email_failed", user_id=user.id)
        except Exception as exc:
            # the response must look identical either way
            self.logger.error(
                "password_reset_request_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def reset_password(self, token: str, new_password: str) -> None:
        try:
            self._require_strong(new_password)
            record = self.store.consume_password_reset_token(token, self._now())
            if not record:
                self.logger.warning("password_reset_invalid_token")
                raise BadRequestError(MSG_INVALID_ONE_SHOT)
            password_hash = await self._hash(new_password)
            self.store.save_password(record.user_id, password_hash, self.hasher.algo)
            revoked = self.sessions.revoke_all(record.user_id)
            self.logger.info(
                "password_reset_completed", user_id=record.user_id, sessions_revoked=revoked
            )
        except ServiceError:
            raise
        except Exception as exc:
            raise self._unexpected("reset_password", exc, "failed to reset password") from exc

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        try:
            user = self.store.get_user(user_id)
            if not user:
                raise NotFoundError(MSG_USER_NOT_FOUND)
            record = self.store.get_password_record(user_id)
            if not record or not await self._verify(current_password, record.password_hash):
                self.logger.warning("password_change_rejected", user_id=user_id)
                raise AuthenticationError(MSG_WRONG_CURRENT_PASSWORD)
            self._require_strong(new_password)
            password_hash = await self._hash(new_password)
            self.store.save_password(user_id, password_hash, self.hasher.algo)
            revoked = self.sessions.revoke_all(user_id)
            self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        except ServiceError:
            raise
        except Exception as exc:
            raise self._unexpected("change_password", exc, "failed to change password") from exc

    # profile
    async def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError(MSG_USER_NOT_FOUND)
        return user

    async def update_profile(
        self,
        user_id: str,
        *,
        first_name=_UNSET,
        last_name=_UNSET,
        display_name=_UNSET,
        avatar_url=_UNSET,
    ) -> User:
        user = await self.get_profile(user_id)
        limits = {
            "first_name": (first_name, FIRST_NAME_MAX_LENGTH),
            "last_name": (last_name, LAST_NAME_MAX_LENGTH),
            "display_name": (display_name, DISPLAY_NAME_MAX_LENGTH),
        }
        changes: dict = {}
        for field_name, (value, limit) in limits.items():
            if value is _UNSET:
                continue
            if value is not None:
                value = value.strip()
                if len(value) > limit:
                    raise BadRequestError(
                        f"{field_name.replace('_', ' ')} must be at most {limit} characters",
                        detail={"field": field_name},
                    )
            changes[field_name] = value or None
        if avatar_url is not _UNSET:
            changes["avatar_url"] = avatar_url or None
        if "display_name" not in changes and (
            "first_name" in changes or "last_name" in changes
        ):
            changes["display_name"] = compose_display_name(
                changes.get("first_name", user.first_name),
                changes.get("last_name", user.last_name),
            )
        if not changes:
            return user
        updated = self.store.update_user(user_id, **changes)
        if not updated:
            raise NotFoundError(MSG_USER_NOT_FOUND)
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(changes))
        return updated

    async def get_stats(self) -> AuthStats:
        return AuthStats(
            total_users=self.store.count_users(),
            active_sessions=self.store.count_active_sessions(self._now()),
            verified_users=self.store.count_verified_users(),
        )

    async def user_exists(self, email: str) -> bool:
        return self.store.get_user_by_email(email) is not None
