from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# 32 bytes -> 256 bits of entropy per opaque token
OPAQUE_TOKEN_BYTES = 32


def new_token_value() -> str:
    return secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)


def token_digest(value: str) -> str:
    """SHA-256 hex digest under which opaque tokens are stored."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PasswordCredential:
    password_hash: str


@dataclass(frozen=True)
class OAuthOnly:
    provider: str = "google"


Credential = Union[PasswordCredential, OAuthOnly]


@dataclass
class User:
    id: str
    email: str
    name: str
    credential: Credential
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    google_id: Optional[str] = None
    picture_url: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return isinstance(self.credential, PasswordCredential)


@dataclass
class RefreshToken:
    """One server-tracked session. ``token_hash`` is the digest of the opaque value."""

    token_hash: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class OneTimeTokenPurpose(str, Enum):
    RESET = "reset"
    VERIFY = "verify"


@dataclass
class OneTimeToken:
    token_hash: str
    user_id: str
    purpose: OneTimeTokenPurpose
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class OneTimeEffect:
    """The write a one-time token authorizes, committed together with ``used=true``."""

    password_hash: Optional[str] = None
    mark_email_verified: bool = False
    reset_login_attempts: bool = False
