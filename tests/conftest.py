import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything loads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="storeauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")
# Tests run without Redis; the in-process fallbacks are exercised instead
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from storeauth.config import Settings  # noqa: E402
from storeauth.service.passwords import CredentialVerifier  # noqa: E402
from storeauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from storeauth.storage.memory import MemoryStore  # noqa: E402


class MutableClock:
    """Test clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier double that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.password_resets: list[tuple[str, str]] = []
        self.verifications: list[tuple[str, str]] = []
        self.two_factor_notices: list[str] = []

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.password_resets.append((to_email, token))
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        return True

    def send_two_factor_enabled(self, to_email: str) -> bool:
        self.two_factor_notices.append(to_email)
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own state directory so persisted accounts never leak
    runtime_root = tmp_path / "runtime"
    runtime_root.mkdir()
    monkeypatch.setenv("SHARED_FS_ROOT", str(runtime_root))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        lockout_threshold=5,
        lockout_duration_minutes=60,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def verifier():
    # Cheap parameters keep the suite fast; the algorithm is still argon2id
    return CredentialVerifier(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


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
