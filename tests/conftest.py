import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authkernel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")
os.environ.setdefault("EMAIL_VERIFICATION_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkernel.config import Settings  # noqa: E402
from authkernel.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh state file per test so the memory store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings for unit tests that build services by hand."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_refresh_secret="Refresh-Secret-Key_for-Automation-Only-123456789!",
        password_hash_cost=1,
        password_hash_memory_kib=1024,
        email_verification_enabled=False,
    )


class RecordingNotifier:
    """Notifier double that records every message instead of sending it."""

    def __init__(self, *, configured: bool = True, succeed: bool = True) -> None:
        self.configured = configured
        self.succeed = succeed
        self.verifications = []
        self.resets = []
        self.welcomes = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    def send_verification(self, to_email, token, url, ttl_hours, *, name=None):
        self.verifications.append(
            {"to": to_email, "token": token, "url": url, "ttl_hours": ttl_hours, "name": name}
        )
        return self.succeed

    def send_password_reset(self, to_email, url, ttl_minutes):
        self.resets.append({"to": to_email, "url": url, "ttl_minutes": ttl_minutes})
        return self.succeed

    def send_welcome(self, to_email, dashboard_url, *, name=None):
        self.welcomes.append({"to": to_email, "url": dashboard_url, "name": name})
        return self.succeed

    @property
    def last_reset_token(self):
        return self.resets[-1]["url"].split("token=", 1)[1]

    @property
    def last_verification_token(self):
        return self.verifications[-1]["token"]


@pytest.fixture
def notifier():
    return RecordingNotifier()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
