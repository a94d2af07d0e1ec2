from __future__ import annotations

from fastapi import Response

from authkernel.config import Settings
from authkernel.service.constants import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_COOKIE_PATH,
    REFRESH_TOKEN_COOKIE,
    SESSION_ACTIVE_COOKIE,
)
from authkernel.service.tokens import TokenPair


def _cookie_policy(settings: Settings) -> dict:
    if settings.is_production:
        return {"secure": True, "samesite": "strict"}
    return {"secure": False, "samesite": "lax"}


def set_auth_cookies(
    response: Response,
    tokens: TokenPair,
    settings: Settings,
    *,
    refresh_max_age: int,
) -> None:
    """Write access, refresh and session marker cookies for browser clients."""
    policy = _cookie_policy(settings)
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        tokens.access_token,
        max_age=tokens.expires_in,
        httponly=True,
        path="/",
        **policy,
    )
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        tokens.refresh_token,
        max_age=refresh_max_age,
        httponly=True,
        path=REFRESH_COOKIE_PATH,
        **policy,
    )
    # readable by scripts so the frontend knows a session exists
    response.set_cookie(
        SESSION_ACTIVE_COOKIE,
        "true",
        max_age=refresh_max_age,
        httponly=False,
        path="/",
        **policy,
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    policy = _cookie_policy(settings)
    response.delete_cookie(ACCESS_TOKEN_COOKIE, path="/", httponly=True, **policy)
    response.delete_cookie(
        REFRESH_TOKEN_COOKIE, path=REFRESH_COOKIE_PATH, httponly=True, **policy
    )
    response.delete_cookie(SESSION_ACTIVE_COOKIE, path="/", **policy)
