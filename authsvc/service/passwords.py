from __future__ import annotations

import asyncio

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authsvc.logging import get_logger
from authsvc.service.clock import Clock
from authsvc.service.errors import AuthErrorCode
from authsvc.service.lockout import Locked, LockoutPolicy
from authsvc.service.result import Ok, Outcome, fail
from authsvc.storage.base import AuthStore
from authsvc.storage.models import OAuthOnly, User

logger = get_logger(__name__)


class CredentialVerifier:
    """Checks submitted passwords and enforces failed-attempt lockout.

    Every verification of a password user writes the resulting counter and
    lock expiry back to the store, including on success. Failures go through
    ``record_login_failure`` so concurrent wrong passwords each count. Argon2
    work runs in a worker thread so slow hashes do not stall the event loop.
    """

    def __init__(
        self,
        store: AuthStore,
        lockout: LockoutPolicy,
        clock: Clock,
        *,
        time_cost: int = 3,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.clock = clock
        self._hasher = PasswordHasher(time_cost=time_cost, type=Type.ID)
        self._dummy_hash: str | None = None

    def hash_password_sync(self, password: str) -> str:
        return self._hasher.hash(password)

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._hasher.hash, password)

    def _matches(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    async def burn_comparison(self, password: str) -> None:
        """Spend one comparison's worth of work for callers with no user to check."""
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash_password("unused-dummy-password")
        await asyncio.to_thread(self._matches, self._dummy_hash, password)

    async def verify(self, user: User, password: str) -> Outcome[User]:
        credential = user.credential
        if isinstance(credential, OAuthOnly):
            logger.info("password_login_for_oauth_user", user_id=user.id, provider=credential.provider)
            return fail(
                AuthErrorCode.INVALID_LOGIN_METHOD,
                f"this account signs in with {credential.provider}",
                provider=credential.provider,
            )

        now = self.clock.now()
        state = self.lockout.evaluate(user.failed_login_attempts, user.locked_until, now)
        if isinstance(state, Locked):
            self.store.update_login_attempts(user.id, *self.lockout.persisted(state))
            logger.warning("login_rejected_account_locked", user_id=user.id, locked_until=state.until.isoformat())
            return fail(
                AuthErrorCode.ACCOUNT_LOCKED,
                "account temporarily locked after repeated failed logins",
                retry_after=state.retry_after(now),
            )

        if await asyncio.to_thread(self._matches, credential.password_hash, password):
            self.store.update_login_attempts(user.id, *self.lockout.persisted(self.lockout.register_success()))
            if self._hasher.check_needs_rehash(credential.password_hash):
                self.store.update_password(user.id, await self.hash_password(password))
                logger.info("password_rehashed", user_id=user.id)
            return Ok(user)

        attempts, locked_until = self.store.record_login_failure(
            user.id, lambda count, until: self.lockout.failure_update(count, until, now)
        )
        next_state = self.lockout.evaluate(attempts, locked_until, now)
        if isinstance(next_state, Locked):
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=next_state.failed_attempts,
                locked_until=next_state.until.isoformat(),
            )
        else:
            logger.info("password_verification_failed", user_id=user.id, attempts=next_state.failed_attempts)
        return fail(AuthErrorCode.INVALID_CREDENTIALS, "invalid email or password")
