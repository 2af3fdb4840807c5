"""Maintenance scripts release the runtime they open."""

import importlib.util
from pathlib import Path

import pytest

from authsvc.service import runtime as runtime_module
from authsvc.storage.errors import StoreUnavailable

ROOT = Path(__file__).resolve().parent.parent


def _load_script(name):
    spec = importlib.util.spec_from_file_location(name, ROOT / "scripts" / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TrackedRuntime:
    def __init__(self, runtime):
        self.inner = runtime
        self.store = runtime.store
        self.clock = runtime.clock
        self.auth = runtime.auth
        self.closed = 0

    async def close(self):
        self.closed += 1
        await self.inner.close()


@pytest.fixture
def tracked(runtime, monkeypatch):
    wrapper = TrackedRuntime(runtime)
    monkeypatch.setattr(runtime_module, "get_runtime", lambda: wrapper)
    return wrapper


class TestPurgeTokens:
    def test_purge_closes_runtime(self, tracked, capsys):
        assert _load_script("purge_tokens").main() == 0
        assert tracked.closed == 1
        assert "Purged 0 token rows" in capsys.readouterr().out

    def test_purge_closes_runtime_when_store_is_down(self, tracked, monkeypatch):
        def unavailable(now):
            raise StoreUnavailable("database unavailable")

        monkeypatch.setattr(tracked.store, "purge_expired", unavailable)
        assert _load_script("purge_tokens").main() == 1
        assert tracked.closed == 1


class TestCreateUser:
    async def test_create_user_closes_runtime(self, tracked):
        result = await _load_script("create_user").create_user("ops@example.com", "LongPassword123")
        assert result["status"] == "created"
        assert tracked.closed == 1

    async def test_store_failure_still_closes_runtime(self, tracked, monkeypatch):
        def unavailable(email):
            raise StoreUnavailable("database unavailable")

        monkeypatch.setattr(tracked.store, "find_user_by_email", unavailable)
        with pytest.raises(StoreUnavailable):
            await _load_script("create_user").create_user("ops@example.com", "LongPassword123")
        assert tracked.closed == 1
