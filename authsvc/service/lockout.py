from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class Active:
    failed_attempts: int = 0


@dataclass(frozen=True)
class Locked:
    until: datetime
    failed_attempts: int

    def retry_after(self, now: datetime) -> int:
        return max(1, int((self.until - now).total_seconds()))


LockState = Union[Active, Locked]


class LockoutPolicy:
    """Derives Active/Locked from the persisted counter and lock expiry.

    Locked -> Active happens lazily on the first evaluation after ``until``;
    nothing sweeps expired locks in the background.
    """

    def __init__(self, threshold: int, window: timedelta) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        self.threshold = threshold
        self.window = window

    def evaluate(
        self, failed_attempts: int, locked_until: Optional[datetime], now: datetime
    ) -> LockState:
        if locked_until is not None:
            if now < locked_until:
                return Locked(until=locked_until, failed_attempts=failed_attempts)
            return Active(0)
        return Active(failed_attempts)

    def register_failure(self, state: Active, now: datetime) -> LockState:
        attempts = state.failed_attempts + 1
        if attempts >= self.threshold:
            return Locked(until=now + self.window, failed_attempts=attempts)
        return Active(attempts)

    def failure_update(
        self, failed_attempts: int, locked_until: Optional[datetime], now: datetime
    ) -> Tuple[int, Optional[datetime]]:
        """Persisted pair after one more failure; an account already locked keeps its expiry."""
        state = self.evaluate(failed_attempts, locked_until, now)
        if isinstance(state, Locked):
            return self.persisted(state)
        return self.persisted(self.register_failure(state, now))

    def register_success(self) -> Active:
        return Active(0)

    @staticmethod
    def persisted(state: LockState) -> Tuple[int, Optional[datetime]]:
        """Return the ``(failed_attempts, locked_until)`` pair to store."""
        if isinstance(state, Locked):
            return state.failed_attempts, state.until
        return state.failed_attempts, None
