from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from authsvc.logging import get_logger
from authsvc.service.clock import Clock
from authsvc.service.errors import AuthErrorCode
from authsvc.service.result import Ok, Outcome, fail
from authsvc.storage.base import AuthStore
from authsvc.storage.models import RefreshToken, User, new_token_value, token_digest

logger = get_logger(__name__)


@dataclass(frozen=True)
class Rotation:
    refresh_token: str
    row: RefreshToken
    user: User


class RefreshSessionStore:
    """Validation, rotation and revocation rules for refresh tokens.

    Rotation is delegated to the store as one conditional revoke-and-insert
    so that, of several concurrent refreshes with the same value, exactly one
    observes the unrevoked row and wins.
    """

    def __init__(
        self,
        store: AuthStore,
        clock: Clock,
        ttl: timedelta,
        *,
        reuse_revokes_all: bool = False,
    ) -> None:
        self.store = store
        self.clock = clock
        self.ttl = ttl
        self.reuse_revokes_all = reuse_revokes_all

    def _new_row(self, user_id: str) -> tuple[str, RefreshToken]:
        now = self.clock.now()
        value = new_token_value()
        row = RefreshToken(
            token_hash=token_digest(value),
            user_id=user_id,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        return value, row

    def open(self, user_id: str) -> tuple[str, RefreshToken]:
        value, row = self._new_row(user_id)
        self.store.create_refresh_token(row)
        return value, row

    def validate(self, token_value: str) -> Outcome[RefreshToken]:
        if not token_value:
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid refresh token")
        row = self.store.find_refresh_token(token_digest(token_value))
        if row is None:
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid refresh token")
        if row.revoked:
            if self.reuse_revokes_all:
                revoked = self.store.revoke_all_user_refresh_tokens(row.user_id, self.clock.now())
                logger.warning("refresh_token_reuse_detected", user_id=row.user_id, sessions_revoked=revoked)
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid refresh token")
        now = self.clock.now()
        if row.is_expired(now):
            self.store.revoke_refresh_token(row.token_hash, now)
            return fail(AuthErrorCode.TOKEN_EXPIRED, "refresh token expired")
        return Ok(row)

    def rotate(self, token_value: str) -> Outcome[Rotation]:
        checked = self.validate(token_value)
        if not checked.ok:
            return checked
        old = checked.value
        user = self.store.find_user_by_id(old.user_id)
        if user is None:
            self.store.revoke_refresh_token(old.token_hash, self.clock.now())
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid refresh token")
        value, replacement = self._new_row(user.id)
        if not self.store.rotate_refresh_token(old.token_hash, replacement, self.clock.now()):
            logger.info("refresh_rotation_lost_race", user_id=user.id)
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid refresh token")
        return Ok(Rotation(refresh_token=value, row=replacement, user=user))

    def revoke(self, token_value: str) -> None:
        if not token_value:
            return
        if self.store.revoke_refresh_token(token_digest(token_value), self.clock.now()):
            logger.info("refresh_token_revoked")

    def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_all_user_refresh_tokens(user_id, self.clock.now())
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=revoked)
        return revoked
