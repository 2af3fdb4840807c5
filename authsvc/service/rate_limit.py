from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta
from typing import Dict, Protocol, Tuple

from redis import Redis

from authsvc.service.clock import Clock
from authsvc.service.errors import AuthErrorCode
from authsvc.service.result import Ok, Outcome, fail

_LIMITED_MESSAGE = "too many requests, try again later"


class RateLimiter(Protocol):
    def hit(self, key: str, limit: int, window: timedelta) -> Outcome[int]: ...


def _limited(retry_after: int) -> Outcome[int]:
    return fail(AuthErrorCode.TOO_MANY_REQUESTS, _LIMITED_MESSAGE, retry_after=max(1, retry_after))


class FixedWindowRateLimiter:
    """Per-key fixed-window counters held in process memory.

    Windows that have run out are evicted from inside ``hit`` at most once per
    ``sweep_interval``, so the table only holds keys seen in the current window.
    """

    def __init__(self, clock: Clock, *, sweep_interval: timedelta = timedelta(minutes=1)) -> None:
        self.clock = clock
        self.sweep_interval = sweep_interval
        self._windows: Dict[str, Tuple[datetime, int, timedelta]] = {}
        self._next_sweep = clock.now() + sweep_interval
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int, window: timedelta) -> Outcome[int]:
        """Count one request against ``key``; Ok carries the remaining allowance."""
        now = self.clock.now()
        with self._lock:
            if now >= self._next_sweep:
                self._evict_expired(now)
                self._next_sweep = now + self.sweep_interval
            started, count, _ = self._windows.get(key, (now, 0, window))
            if now - started >= window:
                started, count = now, 0
            if count >= limit:
                return _limited(int((started + window - now).total_seconds()))
            self._windows[key] = (started, count + 1, window)
            return Ok(limit - count - 1)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def _evict_expired(self, now: datetime) -> int:
        stale = [
            key
            for key, (started, _, window) in self._windows.items()
            if now - started >= window
        ]
        for key in stale:
            del self._windows[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


class RedisRateLimiter:
    """Fixed-window counters shared through Redis so every worker sees one count."""

    # Atomic increment; the expiry is set once, when the window opens
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('TTL', KEYS[1])
if count == 1 or ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, client: Redis) -> None:
        self.client = client
        self._fixed_window = client.register_script(self._FIXED_WINDOW_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "RedisRateLimiter":
        return cls(
            Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        )

    @staticmethod
    def _normalize_key(key: str) -> str:
        """Hash the logical key so caller-supplied emails never reach Redis verbatim."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    def hit(self, key: str, limit: int, window: timedelta) -> Outcome[int]:
        window_seconds = max(1, int(window.total_seconds()))
        count, ttl = self._fixed_window(keys=[self._normalize_key(key)], args=[window_seconds])
        count, ttl = int(count), int(ttl)
        if count > limit:
            return _limited(ttl)
        return Ok(limit - count)

    def reset(self, key: str) -> None:
        self.client.delete(self._normalize_key(key))

    def close(self) -> None:
        self.client.close()
