from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from authsvc.logging import get_logger
from authsvc.storage.errors import ConstraintViolation
from authsvc.storage.models import (
    Credential,
    OneTimeEffect,
    OneTimeToken,
    OneTimeTokenPurpose,
    PasswordCredential,
    RefreshToken,
    User,
)


class MemoryStore:
    """In-process backing store used for tests and local development.

    A single re-entrant lock guards every table, so each conditional update
    (rotation, revocation, one-time token consumption) is a critical section.
    Returned records are copies; mutating them does not write through.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        self._data_lock = threading.RLock()

    # users -----------------------------------------------------------------

    def _user_or_raise(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def find_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == needle:
                    return replace(user)
        return None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.google_id == google_id:
                    return replace(user)
        return None

    def create_user(
        self,
        email: str,
        name: str,
        credential: Credential,
        *,
        email_verified: bool = False,
        google_id: Optional[str] = None,
        picture_url: Optional[str] = None,
    ) -> User:
        normalized = email.lower()
        with self._data_lock:
            if any(existing.email.lower() == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if google_id and any(
                existing.google_id == google_id for existing in self.users.values()
            ):
                raise ConstraintViolation("google account already linked", {"field": "google_id"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                credential=credential,
                email_verified=email_verified,
                google_id=google_id,
                picture_url=picture_url,
            )
            self.users[user.id] = user
            return replace(user)

    def update_login_attempts(
        self, user_id: str, attempts: int, locked_until: Optional[datetime]
    ) -> None:
        with self._data_lock:
            user = self._user_or_raise(user_id)
            user.failed_login_attempts = attempts
            user.locked_until = locked_until
            user.updated_at = datetime.now(timezone.utc)

    def record_login_failure(
        self,
        user_id: str,
        transition: Callable[[int, Optional[datetime]], Tuple[int, Optional[datetime]]],
    ) -> Tuple[int, Optional[datetime]]:
        with self._data_lock:
            user = self._user_or_raise(user_id)
            user.failed_login_attempts, user.locked_until = transition(
                user.failed_login_attempts, user.locked_until
            )
            user.updated_at = datetime.now(timezone.utc)
            return user.failed_login_attempts, user.locked_until

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self._user_or_raise(user_id)
            user.credential = PasswordCredential(password_hash)
            user.updated_at = datetime.now(timezone.utc)

    def mark_email_verified(self, user_id: str) -> None:
        with self._data_lock:
            user = self._user_or_raise(user_id)
            user.email_verified = True
            user.updated_at = datetime.now(timezone.utc)

    def link_google_account(
        self, user_id: str, google_id: str, picture_url: Optional[str] = None
    ) -> None:
        with self._data_lock:
            user = self._user_or_raise(user_id)
            user.google_id = google_id
            user.email_verified = True
            if picture_url:
                user.picture_url = picture_url
            user.updated_at = datetime.now(timezone.utc)

    # refresh tokens --------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> None:
        with self._data_lock:
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.token_hash] = replace(token)

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token_hash)
            return replace(row) if row else None

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            row = self.refresh_tokens.get(token_hash)
            if not row or row.revoked:
                return False
            row.revoked = True
            row.revoked_at = now
            return True

    def rotate_refresh_token(
        self, old_hash: str, replacement: RefreshToken, now: datetime
    ) -> bool:
        with self._data_lock:
            if replacement.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            if not self.revoke_refresh_token(old_hash, now):
                return False
            self.create_refresh_token(replacement)
            return True

    def revoke_all_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        revoked = 0
        with self._data_lock:
            for row in self.refresh_tokens.values():
                if row.user_id == user_id and not row.revoked:
                    row.revoked = True
                    row.revoked_at = now
                    revoked += 1
        return revoked

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [replace(row) for row in self.refresh_tokens.values() if row.user_id == user_id]

    # one-time tokens -------------------------------------------------------

    def create_one_time_token(self, token: OneTimeToken) -> None:
        with self._data_lock:
            self._user_or_raise(token.user_id)
            self.one_time_tokens[token.token_hash] = replace(token)

    def find_one_time_token(self, token_hash: str) -> Optional[OneTimeToken]:
        with self._data_lock:
            row = self.one_time_tokens.get(token_hash)
            return replace(row) if row else None

    def invalidate_one_time_tokens(
        self, user_id: str, purpose: OneTimeTokenPurpose, now: datetime
    ) -> int:
        invalidated = 0
        with self._data_lock:
            for row in self.one_time_tokens.values():
                if row.user_id == user_id and row.purpose == purpose and not row.used:
                    row.used = True
                    row.used_at = now
                    invalidated += 1
        return invalidated

    def mark_one_time_token_used(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            row = self.one_time_tokens.get(token_hash)
            if not row or row.used:
                return False
            row.used = True
            row.used_at = now
            return True

    def consume_one_time_token(
        self,
        token_hash: str,
        purpose: OneTimeTokenPurpose,
        now: datetime,
        effect: OneTimeEffect,
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            row = self.one_time_tokens.get(token_hash)
            if not row or row.purpose != purpose or row.used or row.is_expired(now):
                return None
            # Any failure here leaves the token unused
            self._apply_effect(row.user_id, effect)
            self.mark_one_time_token_used(token_hash, now)
            return replace(row)

    def _apply_effect(self, user_id: str, effect: OneTimeEffect) -> None:
        self._user_or_raise(user_id)
        if effect.password_hash is not None:
            self.update_password(user_id, effect.password_hash)
        if effect.mark_email_verified:
            self.mark_email_verified(user_id)
        if effect.reset_login_attempts:
            self.update_login_attempts(user_id, 0, None)

    # maintenance -----------------------------------------------------------

    def purge_expired(self, now: datetime) -> int:
        with self._data_lock:
            stale_refresh = [
                key
                for key, row in self.refresh_tokens.items()
                if row.revoked or row.is_expired(now)
            ]
            for key in stale_refresh:
                del self.refresh_tokens[key]
            stale_one_time = [
                key
                for key, row in self.one_time_tokens.items()
                if row.used or row.is_expired(now)
            ]
            for key in stale_one_time:
                del self.one_time_tokens[key]
        purged = len(stale_refresh) + len(stale_one_time)
        if purged:
            self.logger.info("expired_tokens_purged", count=purged)
        return purged
