"""OAuth CSRF state guard tests."""

import asyncio
import threading
from datetime import timedelta

from authsvc.service.errors import AuthErrorCode
from authsvc.service.oauth_state import OAuthStateGuard


class TestOAuthStateGuard:
    def test_state_is_random_hex(self, clock):
        guard = OAuthStateGuard(clock)
        first, second = guard.issue_state(), guard.issue_state()
        assert first != second
        assert len(first) == 64
        int(first, 16)

    def test_state_redeems_exactly_once(self, clock):
        guard = OAuthStateGuard(clock)
        state = guard.issue_state()

        assert guard.redeem(state).ok
        result = guard.redeem(state)
        assert result.code is AuthErrorCode.INVALID_TOKEN
        assert len(guard) == 0

    def test_unknown_state_is_rejected(self, clock):
        guard = OAuthStateGuard(clock)
        assert guard.redeem("forged").code is AuthErrorCode.INVALID_TOKEN
        assert guard.redeem("").code is AuthErrorCode.INVALID_TOKEN

    def test_state_expires_after_ttl(self, clock):
        guard = OAuthStateGuard(clock, timedelta(minutes=10))
        fresh = guard.issue_state()
        stale = guard.issue_state()

        clock.advance(minutes=9, seconds=59)
        assert guard.redeem(fresh).ok

        clock.advance(seconds=1)
        result = guard.redeem(stale)
        assert result.code is AuthErrorCode.INVALID_TOKEN
        assert result.message == "oauth state expired"
        # an expired state is consumed by the failed attempt
        assert len(guard) == 0

    def test_sweep_drops_only_expired_states(self, clock):
        guard = OAuthStateGuard(clock, timedelta(minutes=10))
        guard.issue_state()
        clock.advance(minutes=6)
        young = guard.issue_state()
        clock.advance(minutes=5)

        assert guard.sweep() == 1
        assert len(guard) == 1
        assert guard.redeem(young).ok

    def test_concurrent_redemption_has_one_winner(self, clock):
        guard = OAuthStateGuard(clock)
        state = guard.issue_state()
        barrier = threading.Barrier(6)
        outcomes = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            result = guard.redeem(state)
            with lock:
                outcomes.append(result.ok)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(True) == 1


class TestOAuthStateSweeper:
    async def test_sweeper_runs_periodically_and_stops(self, clock):
        guard = OAuthStateGuard(clock, timedelta(minutes=10), sweep_interval_seconds=0.01)
        guard.issue_state()
        clock.advance(minutes=11)

        task = guard.start_sweeper()
        assert guard.start_sweeper() is task
        for _ in range(100):
            if len(guard) == 0:
                break
            await asyncio.sleep(0.01)
        assert len(guard) == 0

        await guard.stop_sweeper()
        assert task.cancelled()
        await guard.stop_sweeper()

    async def test_runtime_start_and_close_manage_sweeper(self, runtime):
        await runtime.start()
        task = runtime.oauth_states._sweeper
        assert task is not None and not task.done()

        await runtime.close()
        assert task.done()
        assert runtime.oauth_states._sweeper is None
