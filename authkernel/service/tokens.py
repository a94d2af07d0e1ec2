from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.constants import DEFAULT_ACCESS_EXPIRES_IN

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([mhd])$")
_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days"}
_FALLBACK_DURATION = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(duration: str) -> Optional[timedelta]:
    """Parse ``<n>m``, ``<n>h`` or ``<n>d``; None when malformed or non-positive."""
    match = _DURATION_RE.match((duration or "").strip())
    if not match:
        return None
    value = int(match.group(1))
    if value <= 0:
        return None
    return timedelta(**{_DURATION_UNITS[match.group(2)]: value})


def generate_opaque_token() -> str:
    """64 hex characters from 32 bytes of CSPRNG output."""
    return secrets.token_hex(32)


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass
class TokenCheck:
    status: TokenStatus
    payload: Optional[dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == TokenStatus.VALID


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class TokenIssuer:
    """Signs and verifies HS256 access and refresh tokens.

    Access and refresh tokens use separate secrets; the refresh secret falls
    back to the access secret when not configured. The clock is injectable so
    expiry can be tested without sleeping.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock()

    # durations
    def compute_expiry(self, duration: str) -> datetime:
        delta = parse_duration(duration)
        if delta is None:
            logger.warning("duration_unparseable", duration=duration, fallback="24h")
            delta = _FALLBACK_DURATION
        return self._now() + delta

    def is_expired(self, expires_at: datetime) -> bool:
        return expires_at <= self._now()

    def _ttl(self, duration: str) -> timedelta:
        return parse_duration(duration) or _FALLBACK_DURATION

    # encoding
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    @staticmethod
    def _sign(secret: str, signing_input: str) -> bytes:
        return hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._encode_segment(self._sign(secret, signing_input))}"

    def _claims(
        self, user_id: str, email: str, token_type: str, ttl: timedelta
    ) -> dict[str, Any]:
        now = self._now()
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "token_type": token_type,
            # makes two tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    # issuance
    def issue_access_token(
        self, user_id: str, email: str, *, session_id: Optional[str] = None
    ) -> str:
        payload = self._claims(
            user_id, email, "access", self._ttl(self.settings.jwt_access_expiration)
        )
        if session_id:
            payload["sid"] = session_id
        return self._encode(payload, self.settings.jwt_secret)

    def issue_refresh_token(
        self, user_id: str, email: str, *, ttl: Optional[timedelta] = None
    ) -> str:
        payload = self._claims(
            user_id,
            email,
            "refresh",
            ttl or self._ttl(self.settings.jwt_refresh_expiration),
        )
        return self._encode(payload, self.settings.refresh_secret)

    def issue_token_pair(
        self,
        user_id: str,
        email: str,
        *,
        session_id: Optional[str] = None,
        refresh_token: Optional[str] = None,
        refresh_ttl: Optional[timedelta] = None,
    ) -> TokenPair:
        access_token = self.issue_access_token(user_id, email, session_id=session_id)
        if refresh_token is None:
            refresh_token = self.issue_refresh_token(user_id, email, ttl=refresh_ttl)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.expires_in(access_token),
        )

    def expires_in(self, token: str) -> int:
        claims = self.parse_claims(token)
        exp = claims.get("exp") if claims else None
        if not isinstance(exp, (int, float)):
            return DEFAULT_ACCESS_EXPIRES_IN
        return max(int(exp - self._now().timestamp()), 0)

    # verification
    def parse_claims(self, token: str) -> Optional[dict[str, Any]]:
        """Decode the payload WITHOUT checking signature or expiry.

        Only for introspection such as computing ``expires_in``; never use the
        result to make an access decision.
        """
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, AttributeError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def check(self, token: str, *, is_refresh: bool = False) -> TokenCheck:
        invalid = TokenCheck(TokenStatus.INVALID)
        if not token or not isinstance(token, str):
            return invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return invalid

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return invalid
        # reject alg confusion (none, RS256 with HMAC key, ...)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return invalid

        secret = self.settings.refresh_secret if is_refresh else self.settings.jwt_secret
        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(self._sign(secret, signing_input))
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return invalid
        if not isinstance(payload, dict):
            return invalid

        if payload.get("iss") != self.settings.jwt_issuer:
            return invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return invalid
        expected_type = "refresh" if is_refresh else "access"
        if payload.get("token_type") != expected_type:
            return invalid
        if not payload.get("sub") or not payload.get("email"):
            return invalid

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            return invalid
        if exp <= self._now().timestamp():
            return TokenCheck(TokenStatus.EXPIRED, payload)
        return TokenCheck(TokenStatus.VALID, payload)

    def verify(self, token: str, *, is_refresh: bool = False) -> Optional[dict[str, Any]]:
        result = self.check(token, is_refresh=is_refresh)
        return result.payload if result.ok else None
