from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.constants import (
    API_PREFIX,
    MSG_AUTH_REQUIRED,
    MSG_EMAIL_NOT_VERIFIED,
    MSG_INVALID_TOKEN,
    MSG_TOKEN_EXPIRED,
    PUBLIC_ROUTES,
)
from authkernel.service.errors import AuthenticationError
from authkernel.service.tokens import TokenIssuer, TokenStatus, utcnow
from authkernel.storage.common import CredentialStore
from authkernel.storage.models import User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user: User
    session_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.user.id


def normalize_path(path: str) -> str:
    path = (path or "/").split("?", 1)[0]
    if path.startswith(API_PREFIX + "/"):
        path = path[len(API_PREFIX):]
    if len(path) > 1:
        path = path.rstrip("/")
    return path or "/"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthGuard:
    """Per-request admission check for protected routes.

    Flow: public route -> admitted; otherwise the access token (bearer header
    first, then the ``access_token`` cookie) must verify, its user must still
    exist, and, when verification is required, the email must be verified.
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        public_routes: frozenset[str] = PUBLIC_ROUTES,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.settings = settings
        self.clock = clock
        self.public_routes = public_routes

    def is_public(self, path: str) -> bool:
        return normalize_path(path) in self.public_routes

    def _reject(self, reason: str, message: str = MSG_INVALID_TOKEN, **context) -> AuthenticationError:
        logger.warning("auth_rejected", reason=reason, **context)
        return AuthenticationError(message, reason=reason)

    async def authenticate(
        self,
        path: str,
        authorization: Optional[str] = None,
        cookie_token: Optional[str] = None,
    ) -> Optional[AuthContext]:
        """Return the caller's context, None for public routes, or raise 401."""
        if self.is_public(path):
            return None

        token = extract_bearer(authorization) or cookie_token
        if not token:
            raise self._reject("missing_token", MSG_AUTH_REQUIRED, path=normalize_path(path))

        result = self.issuer.check(token)
        if result.status == TokenStatus.EXPIRED:
            raise self._reject("token_expired", MSG_TOKEN_EXPIRED)
        if not result.ok or not result.payload:
            raise self._reject("invalid_token")

        payload = result.payload
        user = self.store.get_user(payload["sub"])
        if not user:
            # deleted account still holding a live access token
            raise self._reject("user_not_found", user_id=payload["sub"])
        if self.settings.email_verification_enabled and not user.email_verified:
            raise self._reject("email_not_verified", MSG_EMAIL_NOT_VERIFIED, user_id=user.id)

        await self._touch_last_login(user.id)
        return AuthContext(user=user, session_id=payload.get("sid"))

    async def _touch_last_login(self, user_id: str) -> None:
        try:
            await asyncio.to_thread(self.store.touch_last_login, user_id, self.clock())
        except Exception as exc:
            logger.warning("last_login_update_failed", user_id=user_id, error=str(exc))
