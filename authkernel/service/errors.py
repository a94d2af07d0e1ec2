from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """An auth operation refused the request.

    The API layer turns it into the error envelope using ``status_code``,
    the stable ``error_code`` and the client-safe ``detail`` mapping.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def headers(self) -> Dict[str, str]:
        return {}


class BadRequestError(ServiceError):
    """Malformed input, weak password or an unusable one-shot token."""


class AuthenticationError(ServiceError):
    """Bad credentials or a missing, expired or revoked token.

    ``reason`` lands in ``detail`` so clients can tell an expired access
    token (refresh and retry) from one that will never work.
    """

    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self, message: str, *, reason: Optional[str] = None, detail: Optional[dict] = None
    ) -> None:
        detail = dict(detail or {})
        if reason is not None:
            detail["reason"] = reason
        super().__init__(message, detail=detail)

    @property
    def reason(self) -> Optional[str]:
        return self.detail.get("reason")

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Email already registered."""

    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Storage or notification failure; the message is sanitized before it is sent."""

    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
