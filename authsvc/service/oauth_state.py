from __future__ import annotations

import asyncio
import contextlib
import secrets
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

from authsvc.logging import get_logger
from authsvc.service.clock import Clock
from authsvc.service.errors import AuthErrorCode
from authsvc.service.result import Ok, Outcome, fail

logger = get_logger(__name__)


class OAuthStateGuard:
    """Single-use, time-bounded CSRF states for the OAuth redirect round trip.

    States live only in this process's memory. When the service runs as
    several instances the callback must reach the instance that issued the
    state (sticky routing); there is no cross-instance protection.
    """

    def __init__(
        self,
        clock: Clock,
        ttl: timedelta = timedelta(minutes=10),
        *,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self.clock = clock
        self.ttl = ttl
        self.sweep_interval_seconds = sweep_interval_seconds
        self._states: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def issue_state(self) -> str:
        state = secrets.token_hex(32)
        with self._lock:
            self._states[state] = self.clock.now()
        return state

    def redeem(self, state: str) -> Outcome[None]:
        if not state:
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid oauth state")
        with self._lock:
            issued_at = self._states.pop(state, None)
        if issued_at is None:
            logger.warning("oauth_state_unknown")
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid oauth state")
        if self.clock.now() - issued_at >= self.ttl:
            logger.info("oauth_state_expired")
            return fail(AuthErrorCode.INVALID_TOKEN, "oauth state expired")
        return Ok(None)

    def sweep(self) -> int:
        cutoff = self.clock.now() - self.ttl
        with self._lock:
            stale = [state for state, issued_at in self._states.items() if issued_at <= cutoff]
            for state in stale:
                del self._states[state]
        if stale:
            logger.debug("oauth_states_swept", count=len(stale))
        return len(stale)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.error("oauth_state_sweep_failed", error=str(exc))

    def start_sweeper(self) -> asyncio.Task:
        """Schedule the periodic sweep on the running loop; idempotent."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
