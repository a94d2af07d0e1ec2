from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from authkernel.api.error_handling import error_response, register_exception_handlers
from authkernel.api.routes import client_ip, router
from authkernel.config import Settings
from authkernel.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_purge_task: asyncio.Task | None = None


async def _run_expiry_purge(interval_seconds: int) -> None:
    """Periodically delete expired sessions and one-shot tokens."""
    from authkernel.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            runtime = get_runtime()
            now = datetime.now(timezone.utc)
            removed = await asyncio.to_thread(runtime.store.purge_expired, now)
            if removed:
                logger.info("expired_records_purged", removed=removed)
        except Exception as exc:
            logger.error("expiry_purge_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background maintenance on startup and stop it on shutdown."""
    global _purge_task
    from authkernel.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        runtime.rate_limiter.start()
        _purge_task = asyncio.create_task(
            _run_expiry_purge(runtime.settings.session_purge_interval_seconds)
        )
        logger.info("background_tasks_started")
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
            _purge_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthKernel", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # never a wildcard while credentials are allowed
    return [_settings.frontend_url.rstrip("/")]


# Starlette runs the middleware registered last first: CORS wraps correlation
# id, which wraps security headers, which wrap the rate limiter.
@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    from authkernel.service.runtime import get_runtime

    limiter = get_runtime().rate_limiter
    path = request.url.path
    if request.method.upper() == "OPTIONS" or not limiter.applies_to(path):
        return await call_next(request)
    key = limiter.client_key(client_ip(request), request.headers.get("User-Agent"), path)
    try:
        decision = await limiter.hit(key)
    except Exception as exc:
        # fail open when the counter backend is unreachable
        logger.error("rate_limit_check_failed", path=path, error=str(exc))
        return await call_next(request)
    if not decision.allowed:
        return error_response(
            429,
            "too many requests, please try again later",
            {"retry_after": decision.retry_after},
            code="rate_limited",
            headers=decision.headers(),
        )
    response = await call_next(request)
    for name, value in decision.headers().items():
        response.headers[name] = value
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with a correlation id and echo it as X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Report store connectivity and the running version."""
    from authkernel.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    ping = getattr(runtime.store, "ping", None)
    if ping is None:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        try:
            db_ok = bool(
                await asyncio.wait_for(asyncio.to_thread(ping), HEALTH_CHECK_TIMEOUT_SECONDS)
            )
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            db_ok = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            db_ok = False
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": "postgres"}

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
