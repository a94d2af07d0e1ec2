from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A credential-store write broke a uniqueness or ownership rule.

    ``kind`` is ``"duplicate"`` when an email or refresh token is already
    taken and ``"missing_user"`` when a password, session or one-shot token
    points at a user that is gone. ``detail`` is safe to return to clients.
    """

    DUPLICATE = "duplicate"
    MISSING_USER = "missing_user"

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        kind: str = DUPLICATE,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.kind = kind

    @classmethod
    def duplicate(cls, field: str) -> "ConstraintViolation":
        return cls(f"{field.replace('_', ' ')} already exists", {"field": field})

    @classmethod
    def missing_user(cls, user_id: str) -> "ConstraintViolation":
        return cls("user does not exist", {"user_id": user_id}, kind=cls.MISSING_USER)

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
