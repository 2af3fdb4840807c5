from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authsvc.logging import get_logger
from authsvc.service.clock import Clock
from authsvc.service.errors import AuthErrorCode
from authsvc.service.result import Ok, Outcome, fail
from authsvc.service.sessions import RefreshSessionStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    name: str
    email_verified: bool
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    user_id: str
    token_type: str = "Bearer"

    def expires_in(self, now: datetime) -> int:
        return max(0, int((self.access_expires_at - now).total_seconds()))


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class AccessTokenCodec:
    """HS256 JWT encoding and verification for access tokens.

    Verification rejects anything not signed with the configured secret or
    not issued for the configured issuer and audience. Expiry is checked
    against the injected clock with only ``leeway`` of tolerance.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta,
        leeway: timedelta,
        clock: Clock,
    ) -> None:
        if not secret:
            raise ValueError("access token signing secret is not configured")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self.leeway = leeway
        self.clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(
        self, user_id: str, email: str, name: str, email_verified: bool
    ) -> tuple[str, AccessClaims]:
        now = self.clock.now()
        claims = AccessClaims(
            user_id=user_id,
            email=email,
            name=name,
            email_verified=email_verified,
            issued_at=now,
            expires_at=now + self.ttl,
            jti=uuid.uuid4().hex,
        )
        payload = {
            "sub": user_id,
            "email": email,
            "name": name,
            "email_verified": email_verified,
            "iat": int(now.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
            "type": "access",
            "jti": claims.jti,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", claims

    def _verified_payload(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None

    def decode(self, token: str) -> Outcome[AccessClaims]:
        payload = self._verified_payload(token or "")
        if payload is None:
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid access token")
        if payload.get("iss") != self.issuer:
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid access token")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid access token")
        if payload.get("type") != "access" or not payload.get("sub"):
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid access token")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return fail(AuthErrorCode.INVALID_TOKEN, "invalid access token")
        now_ts = self.clock.now().timestamp()
        if exp_ts <= now_ts - self.leeway.total_seconds():
            return fail(AuthErrorCode.TOKEN_EXPIRED, "access token expired")
        return Ok(
            AccessClaims(
                user_id=str(payload["sub"]),
                email=payload.get("email", ""),
                name=payload.get("name", ""),
                email_verified=bool(payload.get("email_verified")),
                issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
                jti=str(payload.get("jti", "")),
            )
        )


class TokenIssuer:
    """Mints access/refresh pairs and exchanges refresh tokens for new pairs."""

    def __init__(self, codec: AccessTokenCodec, sessions: RefreshSessionStore) -> None:
        self.codec = codec
        self.sessions = sessions

    def issue_token_pair(
        self, user_id: str, email: str, name: str, email_verified: bool
    ) -> TokenPair:
        access_token, claims = self.codec.encode(user_id, email, name, email_verified)
        refresh_value, refresh_row = self.sessions.open(user_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_value,
            access_expires_at=claims.expires_at,
            refresh_expires_at=refresh_row.expires_at,
            user_id=user_id,
        )

    def refresh(self, old_token: str) -> Outcome[TokenPair]:
        rotated = self.sessions.rotate(old_token)
        if not rotated.ok:
            return rotated
        rotation = rotated.value
        user = rotation.user
        access_token, claims = self.codec.encode(user.id, user.email, user.name, user.email_verified)
        return Ok(
            TokenPair(
                access_token=access_token,
                refresh_token=rotation.refresh_token,
                access_expires_at=claims.expires_at,
                refresh_expires_at=rotation.row.expires_at,
                user_id=user.id,
            )
        )

    def verify_access_token(self, token: str) -> Outcome[AccessClaims]:
        return self.codec.decode(token)

    def revoke(self, token_value: str) -> None:
        self.sessions.revoke(token_value)

    def revoke_all(self, user_id: str) -> int:
        return self.sessions.revoke_all(user_id)
