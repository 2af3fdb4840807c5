from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol, Tuple

from authsvc.storage.models import (
    Credential,
    OneTimeEffect,
    OneTimeToken,
    OneTimeTokenPurpose,
    RefreshToken,
    User,
)


class AuthStore(Protocol):
    """Persistence operations the credential and session engine relies on.

    Token rows are addressed by the digest of their value. Methods returning
    ``bool`` report whether *this* call performed the conditional transition,
    which is how concurrent callers learn who won.
    """

    # users
    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    def find_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        name: str,
        credential: Credential,
        *,
        email_verified: bool = False,
        google_id: Optional[str] = None,
        picture_url: Optional[str] = None,
    ) -> User: ...

    def update_login_attempts(
        self, user_id: str, attempts: int, locked_until: Optional[datetime]
    ) -> None: ...

    def record_login_failure(
        self,
        user_id: str,
        transition: Callable[[int, Optional[datetime]], Tuple[int, Optional[datetime]]],
    ) -> Tuple[int, Optional[datetime]]:
        """Apply ``transition`` to the stored counter and lock expiry as one atomic step."""
        ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, user_id: str) -> None: ...

    def link_google_account(
        self, user_id: str, google_id: str, picture_url: Optional[str] = None
    ) -> None: ...

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> None: ...

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool: ...

    def rotate_refresh_token(
        self, old_hash: str, replacement: RefreshToken, now: datetime
    ) -> bool: ...

    def revoke_all_user_refresh_tokens(self, user_id: str, now: datetime) -> int: ...

    # one-time tokens
    def create_one_time_token(self, token: OneTimeToken) -> None: ...

    def find_one_time_token(self, token_hash: str) -> Optional[OneTimeToken]: ...

    def invalidate_one_time_tokens(
        self, user_id: str, purpose: OneTimeTokenPurpose, now: datetime
    ) -> int: ...

    def mark_one_time_token_used(self, token_hash: str, now: datetime) -> bool: ...

    def consume_one_time_token(
        self,
        token_hash: str,
        purpose: OneTimeTokenPurpose,
        now: datetime,
        effect: OneTimeEffect,
    ) -> Optional[OneTimeToken]: ...

    # maintenance
    def purge_expired(self, now: datetime) -> int: ...
