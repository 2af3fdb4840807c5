import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be settled before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "test-google-client")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "test-google-secret")
os.environ.setdefault("OAUTH_REDIRECT_URI", "http://localhost:8000/api/auth/google/callback")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authsvc.config import Settings  # noqa: E402
from authsvc.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from authsvc.storage.memory import MemoryStore  # noqa: E402


class RecordingPublisher:
    """Keeps every published event so tests can inspect payloads."""

    def __init__(self) -> None:
        self.published = []

    def publish(self, event_type, payload) -> None:
        self.published.append((event_type, payload))


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        password_hash_time_cost=1,
        oauth_google_client_id="test-google-client",
        oauth_google_client_secret="test-google-secret",
        oauth_redirect_uri="http://localhost:8000/api/auth/google/callback",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def runtime(settings, memory_store, clock, publisher):
    """A fully wired engine over the memory store and the fake clock."""
    return Runtime(settings, store=memory_store, clock=clock, publisher=publisher)


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
