from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(str, Enum):
    """Where per-client rate limit counters live."""

    MEMORY = "memory"
    REDIS = "redis"


DEFAULT_RATE_LIMITED_PATHS = [
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/forgot-password",
    "/api/auth/reset-password",
    "/api/auth/resend-verification",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth kernel, read from the environment and `.env`."""

    environment: str = env_field("development", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/authkernel", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.MEMORY, "RATE_LIMIT_BACKEND"
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Secret for refresh tokens; falls back to JWT_SECRET when unset",
    )
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    jwt_access_expiration: str = env_field("15m", "JWT_ACCESS_EXPIRATION")
    jwt_refresh_expiration: str = env_field("7d", "JWT_REFRESH_EXPIRATION")

    session_expiry_days: int = env_field(7, "SESSION_EXPIRY_DAYS", gt=0)
    remember_me_expiry_days: int = env_field(30, "REMEMBER_ME_EXPIRY_DAYS", gt=0)
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Replace the session refresh token on every refresh",
    )

    password_hash_cost: int = env_field(
        10,
        "PASSWORD_HASH_COST",
        ge=1,
        description="Work factor for password hashing (argon2 time cost)",
    )
    password_hash_memory_kib: int = env_field(
        19456, "PASSWORD_HASH_MEMORY_KIB", ge=8
    )

    email_verification_enabled: bool = env_field(
        True,
        "EMAIL_VERIFICATION_ENABLED",
        description="Require a verified email before login and on every request",
    )
    email_verification_expiry: str = env_field("24h", "EMAIL_VERIFICATION_EXPIRY")
    password_reset_expiry: str = env_field("30m", "PASSWORD_RESET_EXPIRY")
    frontend_url: str = env_field("http://localhost:3001", "FRONTEND_URL")

    rate_limit_window_seconds: int = env_field(900, "RATE_LIMIT_WINDOW_SECONDS", gt=0)
    rate_limit_max_requests: int = env_field(5, "RATE_LIMIT_MAX_REQUESTS", gt=0)
    rate_limited_paths: list[str] = env_field(
        DEFAULT_RATE_LIMITED_PATHS,
        "RATE_LIMITED_PATHS",
        description="Comma separated paths to rate limit; empty applies to every route",
    )
    session_purge_interval_seconds: int = env_field(
        3600, "SESSION_PURGE_INTERVAL_SECONDS", gt=0
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthKernel", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3001"], "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    # peers whose X-Forwarded-For is believed; empty means the socket address wins
    trusted_proxies: list[str] = env_field([], "TRUSTED_PROXIES")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def refresh_secret(self) -> str:
        return self.jwt_refresh_secret or self.jwt_secret

    @field_validator("rate_limit_backend")
    @classmethod
    def _validate_rate_limit_backend(cls, value: RateLimitBackend) -> RateLimitBackend:
        return RateLimitBackend(value)

    @field_validator(
        "rate_limited_paths", "cors_allow_origins", "trusted_proxies", mode="before"
    )
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authkernel"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # directory may be owned by someone else in a container
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
