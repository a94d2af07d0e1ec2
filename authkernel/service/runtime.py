from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import RateLimitBackend, Settings, get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.auth import AuthService
from authkernel.service.email import EmailService
from authkernel.service.guard import AuthGuard
from authkernel.service.passwords import PasswordHasher
from authkernel.service.rate_limit import RateLimiter, RedisRateLimiter
from authkernel.service.sessions import SessionManager
from authkernel.service.tokens import TokenIssuer
from authkernel.storage.memory import MemoryStore
from authkernel.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_rate_limiter(settings: Settings) -> RateLimiter:
    options = dict(
        window_seconds=settings.rate_limit_window_seconds,
        max_requests=settings.rate_limit_max_requests,
        limited_paths=settings.rate_limited_paths,
    )
    if settings.rate_limit_backend == RateLimitBackend.REDIS:
        logger.info(
            "rate_limiter_redis",
            redis_url=_mask_url_password(settings.redis_url),
        )
        return RedisRateLimiter(settings.redis_url, **options)
    return RateLimiter(**options)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = PasswordHasher(
            cost=self.settings.password_hash_cost,
            memory_kib=self.settings.password_hash_memory_kib,
        )
        self.issuer = TokenIssuer(self.settings)
        self.sessions = SessionManager(self.store, self.issuer, self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.issuer,
            self.sessions,
            self.email,
            self.settings,
        )
        self.guard = AuthGuard(self.store, self.issuer, self.settings)
        self.rate_limiter = _build_rate_limiter(self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            rate_limit_backend=self.settings.rate_limit_backend.value,
            email_configured=self.email.is_configured,
            email_verification=self.settings.email_verification_enabled,
        )

    async def close(self) -> None:
        """Release the rate limiter and any pooled store connections."""
        await self.rate_limiter.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
