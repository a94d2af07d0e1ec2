from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.constants import (
    MSG_EMAIL_NOT_VERIFIED,
    MSG_INVALID_REFRESH,
    MSG_SESSION_NOT_FOUND,
)
from authkernel.service.errors import AuthenticationError, NotFoundError
from authkernel.service.tokens import TokenIssuer, TokenPair, utcnow
from authkernel.storage.common import CredentialStore
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import Session, User

logger = get_logger(__name__)


class SessionManager:
    """Creates, lists, refreshes and revokes refresh-token sessions."""

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.settings = settings
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock()

    def session_ttl(self, remember_me: bool = False) -> timedelta:
        days = (
            self.settings.remember_me_expiry_days
            if remember_me
            else self.settings.session_expiry_days
        )
        return timedelta(days=days)

    def create_session(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        remember_me: bool = False,
    ) -> Session:
        ttl = self.session_ttl(remember_me)
        refresh_token = self.issuer.issue_refresh_token(user.id, user.email, ttl=ttl)
        session = Session.new(
            user.id,
            refresh_token,
            ttl,
            user_agent=user_agent,
            ip_address=ip_address,
            now=self._now(),
        )
        created = self.store.create_session(session)
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=created.id,
            remember_me=remember_me,
        )
        return created

    def issue_tokens(self, user: User, session: Session) -> TokenPair:
        """Access token bound to ``session`` plus the session's refresh token."""
        return self.issuer.issue_token_pair(
            user.id,
            user.email,
            session_id=session.id,
            refresh_token=session.refresh_token,
        )

    def list_active(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id, self._now())

    def revoke(self, session_id: str, user_id: str) -> None:
        if not self.store.delete_session(session_id, user_id):
            raise NotFoundError(MSG_SESSION_NOT_FOUND, detail={"session_id": session_id})
        logger.info("session_revoked", user_id=user_id, session_id=session_id)

    def revoke_current(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        try:
            return self.store.delete_session(session_id)
        except Exception as exc:
            logger.warning("session_revoke_failed", session_id=session_id, error=str(exc))
            return False

    def revoke_all(self, user_id: str) -> int:
        count = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    def touch(self, session_id: str) -> None:
        try:
            self.store.touch_session(session_id, self._now())
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    def refresh(self, refresh_token: str) -> Tuple[User, TokenPair]:
        """Exchange a live refresh token for a new access token.

        The session row is the authority: a token with a valid signature whose
        session was revoked or has expired is rejected.
        """
        payload = self.issuer.verify(refresh_token, is_refresh=True)
        if not payload:
            logger.warning("refresh_rejected", reason="invalid_token")
            raise AuthenticationError(MSG_INVALID_REFRESH, reason="invalid_token")

        session = self.store.get_session_by_refresh_token(refresh_token, self._now())
        if not session:
            logger.warning("refresh_rejected", reason="session_not_found")
            raise AuthenticationError(
                MSG_INVALID_REFRESH, reason="session_not_found"
            )

        user = self.store.get_user(session.user_id)
        if not user or user.id != payload.get("sub"):
            logger.warning("refresh_rejected", reason="user_not_found", session_id=session.id)
            raise AuthenticationError(MSG_INVALID_REFRESH, reason="user_not_found")
        if self.settings.email_verification_enabled and not user.email_verified:
            logger.warning("refresh_rejected", reason="email_not_verified", user_id=user.id)
            raise AuthenticationError(
                MSG_EMAIL_NOT_VERIFIED, reason="email_not_verified"
            )

        self.touch(session.id)

        current_refresh = session.refresh_token
        if self.settings.rotate_refresh_tokens:
            rotated = self.issuer.issue_refresh_token(
                user.id, user.email, ttl=session.expires_at - self._now()
            )
            try:
                swapped = self.store.replace_refresh_token(
                    session.id, current_refresh, rotated
                )
            except ConstraintViolation:
                swapped = False
            if not swapped:
                # a concurrent refresh rotated first; the old token is dead
                logger.warning("refresh_rejected", reason="rotation_conflict", session_id=session.id)
                raise AuthenticationError(
                    MSG_INVALID_REFRESH, reason="rotation_conflict"
                )
            current_refresh = rotated

        tokens = self.issuer.issue_token_pair(
            user.id, user.email, session_id=session.id, refresh_token=current_refresh
        )
        logger.info("tokens_refreshed", user_id=user.id, session_id=session.id)
        return user, tokens
