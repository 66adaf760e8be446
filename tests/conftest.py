import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="blogauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests; the runtime falls back to the in-process cache
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from blogauth.config import Settings  # noqa: E402
from blogauth.service.auth import AuthService  # noqa: E402
from blogauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402


class RecordingNotifier:
    """Notifier double that remembers every raw token it was asked to send."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send_password_reset(self, to_email: str, token: str) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append(("reset", to_email, token))
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append(("verify", to_email, token))
        return True

    def last(self, kind: str) -> str:
        return [token for k, _, token in self.sent if k == kind][-1]


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        values = dict(
            jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
            password_hash_time_cost=1,
            password_hash_memory_cost=8192,
            password_hash_parallelism=1,
            session_touch_interval_seconds=3600,
            repository_timeout_seconds=2.0,
            cache_timeout_seconds=0.2,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def auth_service(memory_store, memory_cache, settings, notifier):
    return AuthService(memory_store, memory_cache, settings, notifier=notifier)


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
