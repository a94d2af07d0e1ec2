from __future__ import annotations

from typing import Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from authkernel.api.schemas import Envelope, ErrorBody
from authkernel.logging import get_correlation_id, get_logger, sanitize_error_message
from authkernel.service.errors import ServiceError
from authkernel.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if 400 <= status_code < 500 else "server_error"


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """Build the error envelope response used by every failure path."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(),
        headers=dict(headers) if headers else None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install exception handlers mapping domain and storage errors to envelopes."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = exc.headers or None
        message = exc.message
        if exc.status_code >= 500:
            message = sanitize_error_message(message)
        return error_response(
            exc.status_code,
            message,
            exc.detail or None,
            code=exc.error_code,
            headers=headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        code = None
        details = None
        detail = exc.detail
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            # raised via routes._http_error
            error = detail["error"]
            code = error.get("code")
            message = str(error.get("message") or "http error")
            details = error.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            message = "http error"
            details = detail if isinstance(detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(
            exc.status_code, message, details, code=code, headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "internal server error", code="server_error")
