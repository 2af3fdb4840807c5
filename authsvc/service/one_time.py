from __future__ import annotations

from datetime import timedelta
from typing import Callable, Dict, Optional

from authsvc.logging import get_logger
from authsvc.service.clock import Clock
from authsvc.service.errors import AuthErrorCode
from authsvc.service.result import Ok, Outcome, fail
from authsvc.storage.base import AuthStore
from authsvc.storage.models import (
    OneTimeEffect,
    OneTimeToken,
    OneTimeTokenPurpose,
    new_token_value,
    token_digest,
)

logger = get_logger(__name__)


class OneTimeTokenManager:
    """Issue and consume single-use tokens for password reset and email verification.

    Issued -> Used is the only persisted transition; expiry is checked when a
    token is presented. Issuing a token retires every earlier unused token of
    the same purpose for that user, so only the newest one is honoured.
    """

    def __init__(
        self,
        store: AuthStore,
        clock: Clock,
        ttls: Dict[OneTimeTokenPurpose, timedelta],
        *,
        revoke_all: Optional[Callable[[str], int]] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.ttls = ttls
        self._revoke_all = revoke_all

    def issue(
        self,
        user_id: str,
        purpose: OneTimeTokenPurpose,
        ttl: Optional[timedelta] = None,
    ) -> str:
        now = self.clock.now()
        retired = self.store.invalidate_one_time_tokens(user_id, purpose, now)
        value = new_token_value()
        self.store.create_one_time_token(
            OneTimeToken(
                token_hash=token_digest(value),
                user_id=user_id,
                purpose=purpose,
                issued_at=now,
                expires_at=now + (ttl or self.ttls[purpose]),
            )
        )
        logger.info("one_time_token_issued", user_id=user_id, purpose=purpose.value, retired=retired)
        return value

    def validate(self, value: str, purpose: OneTimeTokenPurpose) -> Outcome[OneTimeToken]:
        row = self.store.find_one_time_token(token_digest(value)) if value else None
        if (
            row is None
            or row.purpose != purpose
            or row.used
            or row.is_expired(self.clock.now())
        ):
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid or expired token")
        return Ok(row)

    def consume(
        self,
        value: str,
        purpose: OneTimeTokenPurpose,
        effect: OneTimeEffect = OneTimeEffect(),
    ) -> Outcome[str]:
        """Mark the token used together with ``effect`` and return its owner's id.

        If the store fails to apply ``effect`` the exception propagates and the
        token stays unused. A consumed reset token also revokes every refresh
        session of the user.
        """
        if not value:
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid or expired token")
        row = self.store.consume_one_time_token(
            token_digest(value), purpose, self.clock.now(), effect
        )
        if row is None:
            logger.info("one_time_token_rejected", purpose=purpose.value)
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid or expired token")
        logger.info("one_time_token_consumed", user_id=row.user_id, purpose=purpose.value)
        if purpose is OneTimeTokenPurpose.RESET and self._revoke_all is not None:
            self._revoke_all(row.user_id)
        return Ok(row.user_id)
