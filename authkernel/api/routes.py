from __future__ import annotations

import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response

from authkernel.api.cookies import clear_auth_cookies, set_auth_cookies
from authkernel.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    CountResponse,
    EmailExistsResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    StatsResponse,
    TokenResponse,
    UpdateProfileRequest,
    UserResponse,
    validate_email,
)
from authkernel.logging import get_logger
from authkernel.service.auth import AuthResult
from authkernel.service.constants import (
    ACCESS_TOKEN_COOKIE,
    MSG_INVALID_REFRESH,
    REFRESH_TOKEN_COOKIE,
)
from authkernel.service.guard import AuthContext, extract_bearer
from authkernel.service.passwords import passwords_match
from authkernel.service.runtime import Runtime, get_runtime
from authkernel.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def client_ip(request: Request) -> Optional[str]:
    """Address the rate limiter and session records attribute a request to.

    X-Forwarded-For is only read when the socket peer is a trusted proxy, and
    its hops are read right to left, skipping other trusted proxies.
    """
    peer = request.client.host if request.client else None
    trusted = get_runtime().settings.trusted_proxies
    if not peer or peer not in trusted:
        return peer
    forwarded = request.headers.get("X-Forwarded-For", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


async def get_auth_context(request: Request) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.guard.authenticate(
        request.url.path,
        request.headers.get("Authorization"),
        request.cookies.get(ACCESS_TOKEN_COOKIE),
    )
    if ctx is None:
        # dependency attached to a route listed as public
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return ctx


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        token_type=tokens.token_type,
    )


def _seconds_until_session_end(runtime: Runtime, result: AuthResult) -> int:
    remaining = (result.session.expires_at - runtime.issuer.clock()).total_seconds()
    return max(int(math.ceil(remaining)), 0)


def _refresh_cookie_max_age(runtime: Runtime, tokens: TokenPair) -> int:
    claims = runtime.issuer.parse_claims(tokens.refresh_token) or {}
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        now = runtime.issuer.clock().timestamp()
        return max(int(exp - now), 0)
    return int(runtime.sessions.session_ttl().total_seconds())


def _auth_envelope(response: Response, runtime: Runtime, result: AuthResult) -> Envelope:
    set_auth_cookies(
        response,
        result.tokens,
        runtime.settings,
        refresh_max_age=_seconds_until_session_end(runtime, result),
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            tokens=_token_response(result.tokens),
            session_id=result.session.id,
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a local account and open its first session.

    Raises:
        400: If the passwords differ or the password is too weak
        409: If the email is already registered
    """
    passwords_match(body.password, body.confirm_password)
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        user_agent=_user_agent(request),
        ip_address=client_ip(request),
    )
    return _auth_envelope(response, runtime, result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If the credentials are wrong or the email is not verified
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.remember_me,
        user_agent=_user_agent(request),
        ip_address=client_ip(request),
    )
    return _auth_envelope(response, runtime, result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.auth.logout(ctx.session_id)
    clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/logout/all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(ctx.user_id)
    clear_auth_cookies(response, runtime.settings)
    return Envelope(
        status="ok",
        data=CountResponse(message="logged out from all sessions", count=count),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_token: Optional[str] = Query(None, max_length=4096),
):
    """Exchange a refresh token for a new token pair.

    The token is taken from the bearer header, the body, the ``refresh_token``
    cookie, then the ``refresh_token`` query parameter, in that order.
    """
    token = (
        extract_bearer(request.headers.get("Authorization"))
        or (body.refresh_token if body else None)
        or request.cookies.get(REFRESH_TOKEN_COOKIE)
        or refresh_token
    )
    if not token:
        logger.warning("refresh_rejected", reason="missing_token")
        raise _http_error(
            "unauthorized", MSG_INVALID_REFRESH, status_code=401, details={"reason": "missing_token"}
        )
    runtime = get_runtime()
    tokens = await runtime.auth.refresh_tokens(token)
    set_auth_cookies(
        response,
        tokens,
        runtime.settings,
        refresh_max_age=_refresh_cookie_max_age(runtime, tokens),
    )
    return Envelope(status="ok", data=_token_response(tokens))


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(ctx.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[SessionResponse.from_session(s, ctx.session_id) for s in sessions]
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., min_length=1, max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(session_id, ctx.user_id)
    return Envelope(status="ok", data=MessageResponse(message="session revoked"))


@router.get("/auth/verify-email", response_model=Envelope, tags=["verification"])
async def verify_email(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=256),
):
    """Confirm an email address and sign the user in."""
    runtime = get_runtime()
    result = await runtime.auth.verify_email(
        token, user_agent=_user_agent(request), ip_address=client_ip(request)
    )
    return _auth_envelope(response, runtime, result)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["verification"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email)
    return Envelope(status="ok", data=MessageResponse(message="verification email sent"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["password"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="if an account exists for this email, a reset link has been sent"
        ),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["password"])
async def reset_password(body: ResetPasswordRequest):
    passwords_match(body.new_password, body.confirm_password)
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password has been reset"))


@router.put("/auth/change-password", response_model=Envelope, tags=["password"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Change the password and end every session of the caller."""
    passwords_match(body.new_password, body.confirm_password)
    runtime = get_runtime()
    await runtime.auth.change_password(ctx.user_id, body.current_password, body.new_password)
    clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="password changed"))


@router.get("/auth/me", response_model=Envelope, tags=["profile"])
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(status="ok", data=UserResponse.from_user(ctx.user))


@router.get("/auth/profile", response_model=Envelope, tags=["profile"])
async def get_profile(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(ctx.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/auth/profile", response_model=Envelope, tags=["profile"])
async def update_profile(
    body: UpdateProfileRequest, ctx: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    # only fields present in the request are changed
    user = await runtime.auth.update_profile(
        ctx.user_id, **body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/auth/stats", response_model=Envelope, tags=["auth"])
async def stats():
    runtime = get_runtime()
    result = await runtime.auth.get_stats()
    return Envelope(
        status="ok",
        data=StatsResponse(
            total_users=result.total_users,
            active_sessions=result.active_sessions,
            verified_users=result.verified_users,
        ),
    )


@router.get("/auth/check-email", response_model=Envelope, tags=["auth"])
async def check_email(email: str = Query(..., min_length=3, max_length=254)):
    try:
        normalized = validate_email(email)
    except ValueError as exc:
        raise _http_error(
            "validation_error", str(exc), status_code=400, details={"field": "email"}
        ) from exc
    runtime = get_runtime()
    exists = await runtime.auth.user_exists(normalized)
    return Envelope(status="ok", data=EmailExistsResponse(exists=exists))
