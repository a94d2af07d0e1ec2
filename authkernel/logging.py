from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id for the current request, echoed back as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Log fields holding credentials are replaced outright
_SECRET_KEY_PARTS = ("password", "secret", "token", "authorization", "cookie")
# Derived values that are safe to log as-is (email_hash, token_type)
_SAFE_KEY_SUFFIXES = ("_hash", "_type")
REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the caller's X-Request-ID, or a fresh uuid4, to this context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(email: str) -> str:
    """Keep the first two characters of the local part and the domain."""
    if "@" not in email:
        return REDACTED
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key.endswith(_SAFE_KEY_SUFFIXES):
            continue
        if any(part in lower_key for part in _SECRET_KEY_PARTS):
            event_dict[key] = REDACTED
        elif "email" in lower_key:
            event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """Install the structlog pipeline shared by every authkernel logger.

    JSON lines go to stdout unless ``json_output`` is off or
    ``development_mode`` asks for the coloured console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach a client through a 5xx message
_LEAKY_ERROR_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)(database|psycopg|smtp)\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+",
        r"(?i)\$argon2(id|i|d)\$[^\s]+",
        r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]

MAX_CLIENT_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = REDACTED) -> str:
    """Strip queries, paths, credentials, password hashes and JWTs from an error."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _LEAKY_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_CLIENT_ERROR_LENGTH:
        result = result[: MAX_CLIENT_ERROR_LENGTH - 3] + "..."
    return result
