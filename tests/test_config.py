import pytest

from authkernel.config import (
    DEFAULT_RATE_LIMITED_PATHS,
    RateLimitBackend,
    Settings,
    get_settings,
    reset_settings_cache,
)
from authkernel.service.runtime import reset_runtime_for_tests


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("JWT_ACCESS_EXPIRATION", "5m")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "redis")
    monkeypatch.setenv("RATE_LIMITED_PATHS", "/api/auth/login, /api/auth/register,")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com,https://b.example.com")
    monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "true")
    monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.2, 10.0.0.3")

    settings = Settings.from_env()

    assert settings.is_production is True
    assert settings.jwt_access_expiration == "5m"
    assert settings.rate_limit_backend is RateLimitBackend.REDIS
    assert settings.rate_limited_paths == ["/api/auth/login", "/api/auth/register"]
    assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
    assert settings.rotate_refresh_tokens is True
    assert settings.trusted_proxies == ["10.0.0.2", "10.0.0.3"]


def test_defaults(monkeypatch):
    monkeypatch.delenv("RATE_LIMITED_PATHS", raising=False)
    monkeypatch.delenv("TRUSTED_PROXIES", raising=False)
    settings = Settings(jwt_secret="x" * 40)

    assert settings.is_production is False
    assert settings.jwt_refresh_expiration == "7d"
    assert settings.session_expiry_days == 7
    assert settings.remember_me_expiry_days == 30
    assert settings.rate_limit_window_seconds == 900
    assert settings.rate_limit_max_requests == 5
    assert settings.rate_limited_paths == DEFAULT_RATE_LIMITED_PATHS
    assert settings.trusted_proxies == []


def test_refresh_secret_falls_back_to_access_secret():
    shared = Settings(jwt_secret="access-secret")
    split = Settings(jwt_secret="access-secret", jwt_refresh_secret="refresh-secret")

    assert shared.refresh_secret == "access-secret"
    assert split.refresh_secret == "refresh-secret"


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    root = tmp_path / "secrets"
    monkeypatch.setenv("SHARED_FS_ROOT", str(root))

    first = Settings()
    second = Settings()

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (root / ".jwt_secret").read_text().strip() == first.jwt_secret


def test_get_settings_is_cached(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("JWT_ISSUER", "changed")

    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().jwt_issuer == "changed"
    reset_settings_cache()


def test_runtime_reset_requires_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")

    with pytest.raises(RuntimeError):
        reset_runtime_for_tests()

    monkeypatch.setenv("TEST_MODE", "true")
    assert reset_runtime_for_tests().settings.test_mode is True
