from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from authsvc.config import Settings
from authsvc.logging import get_logger
from authsvc.service.clock import Clock
from authsvc.service.errors import AuthErrorCode, IdentityExchangeError
from authsvc.service.events import (
    EMAIL_VERIFICATION_REQUESTED,
    PASSWORD_RESET_REQUESTED,
    USER_CREATED,
    EventPublisher,
    publish_safely,
)
from authsvc.service.oauth import GoogleIdentityProvider
from authsvc.service.oauth_state import OAuthStateGuard
from authsvc.service.one_time import OneTimeTokenManager
from authsvc.service.passwords import CredentialVerifier
from authsvc.service.rate_limit import RateLimiter
from authsvc.service.result import Ok, Outcome, fail
from authsvc.service.tokens import AccessClaims, TokenIssuer, TokenPair
from authsvc.storage.base import AuthStore
from authsvc.storage.errors import ConstraintViolation
from authsvc.storage.models import (
    OAuthOnly,
    OneTimeEffect,
    OneTimeTokenPurpose,
    PasswordCredential,
    User,
)

logger = get_logger(__name__)

_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9._\s]")


def default_display_name(email: str) -> str:
    """Derive a display name from the email local part, at least two characters long."""
    name = _NAME_DISALLOWED.sub("", email.split("@", 1)[0])
    return name.ljust(2, "x")


@dataclass(frozen=True)
class AuthSession:
    tokens: TokenPair
    user: User
    first_login: bool = False


@dataclass(frozen=True)
class OAuthStart:
    authorization_url: str
    state: str


@dataclass(frozen=True)
class SessionStatus:
    """Result of a session check; ``reason`` is set when a presented token was refused."""

    claims: Optional[AccessClaims] = None
    user: Optional[User] = None
    reason: Optional[AuthErrorCode] = None

    @property
    def authenticated(self) -> bool:
        return self.user is not None


class AuthService:
    """Signup, login, session and recovery flows composed from the engine parts.

    Every public method returns ``Ok`` or ``Failure``; nothing here raises for
    an expected client error. Store and identity-provider failures propagate
    and are rendered as server errors by the API layer.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Clock,
        verifier: CredentialVerifier,
        issuer: TokenIssuer,
        one_time: OneTimeTokenManager,
        oauth_states: OAuthStateGuard,
        identity: GoogleIdentityProvider,
        publisher: EventPublisher,
        rate_limiter: RateLimiter,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.verifier = verifier
        self.issuer = issuer
        self.one_time = one_time
        self.oauth_states = oauth_states
        self.identity = identity
        self.publisher = publisher
        self.rate_limiter = rate_limiter

    def _session_for(self, user: User, *, first_login: bool = False) -> AuthSession:
        tokens = self.issuer.issue_token_pair(user.id, user.email, user.name, user.email_verified)
        return AuthSession(tokens=tokens, user=user, first_login=first_login)

    async def _announce_user(self, user: User, provider: str) -> None:
        await publish_safely(
            self.publisher,
            USER_CREATED,
            {"userId": user.id, "email": user.email, "name": user.name, "provider": provider},
        )

    # password accounts -----------------------------------------------------

    async def signup(
        self, email: str, password: str, name: Optional[str] = None
    ) -> Outcome[AuthSession]:
        email = email.strip().lower()
        if self.store.find_user_by_email(email):
            return fail(AuthErrorCode.EMAIL_EXISTS, "email already registered")
        password_hash = await self.verifier.hash_password(password)
        try:
            user = self.store.create_user(
                email, name or default_display_name(email), PasswordCredential(password_hash)
            )
        except ConstraintViolation:
            return fail(AuthErrorCode.EMAIL_EXISTS, "email already registered")
        logger.info("user_signed_up", user_id=user.id)
        session = self._session_for(user)
        await self._announce_user(user, "local")
        return Ok(session)

    async def login(self, email: str, password: str) -> Outcome[AuthSession]:
        email = email.strip().lower()
        limited = self.rate_limiter.hit(
            f"login:{email}", self.settings.login_rate_limit_per_minute, timedelta(minutes=1)
        )
        if not limited.ok:
            return limited
        user = self.store.find_user_by_email(email)
        if user is None:
            await self.verifier.burn_comparison(password)
            logger.info("login_unknown_email")
            return fail(AuthErrorCode.INVALID_CREDENTIALS, "invalid email or password")
        checked = await self.verifier.verify(user, password)
        if not checked.ok:
            return checked
        logger.info("user_logged_in", user_id=user.id)
        return Ok(self._session_for(user))

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Outcome[int]:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            return fail(AuthErrorCode.USER_NOT_FOUND, "user not found")
        checked = await self.verifier.verify(user, current_password)
        if not checked.ok:
            return checked
        if current_password == new_password:
            return fail(AuthErrorCode.BAD_REQUEST, "new password must differ from the current one")
        self.store.update_password(user.id, await self.verifier.hash_password(new_password))
        revoked = self.issuer.revoke_all(user.id)
        logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return Ok(revoked)

    # sessions ----------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> Outcome[AuthSession]:
        refreshed = self.issuer.refresh(refresh_token)
        if not refreshed.ok:
            return refreshed
        pair = refreshed.value
        user = self.store.find_user_by_id(pair.user_id)
        if user is None:
            return fail(AuthErrorCode.USER_NOT_FOUND, "user not found")
        return Ok(AuthSession(tokens=pair, user=user))

    async def logout(self, refresh_token: str) -> Outcome[None]:
        self.issuer.revoke(refresh_token)
        return Ok(None)

    async def logout_all(self, user_id: str) -> Outcome[int]:
        return Ok(self.issuer.revoke_all(user_id))

    def authenticate(self, authorization: Optional[str]) -> Outcome[AccessClaims]:
        if not authorization:
            return fail(AuthErrorCode.UNAUTHORIZED, "missing bearer token")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return fail(AuthErrorCode.UNAUTHORIZED, "missing bearer token")
        return self.issuer.verify_access_token(token.strip())

    async def get_profile(self, user_id: str) -> Outcome[User]:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            return fail(AuthErrorCode.USER_NOT_FOUND, "user not found")
        return Ok(user)

    async def session_status(self, authorization: Optional[str]) -> SessionStatus:
        """Describe the caller's session without failing; anonymous callers get an empty status."""
        if not authorization:
            return SessionStatus()
        verified = self.authenticate(authorization)
        if not verified.ok:
            return SessionStatus(reason=verified.code)
        profile = await self.get_profile(verified.value.user_id)
        if not profile.ok:
            logger.info("session_check_user_missing", user_id=verified.value.user_id)
            return SessionStatus(reason=profile.code)
        return SessionStatus(claims=verified.value, user=profile.value)

    # one-time token flows ---------------------------------------------------

    async def request_password_reset(self, email: str) -> Outcome[Optional[str]]:
        """Issue a reset token; unknown addresses succeed silently with no token."""
        email = email.strip().lower()
        limited = self.rate_limiter.hit(
            f"reset:{email}",
            self.settings.password_reset_max_requests,
            timedelta(minutes=self.settings.password_reset_window_minutes),
        )
        if not limited.ok:
            logger.warning("password_reset_rate_limited")
            return limited
        user = self.store.find_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email")
            return Ok(None)
        token = self.one_time.issue(user.id, OneTimeTokenPurpose.RESET)
        await publish_safely(
            self.publisher,
            PASSWORD_RESET_REQUESTED,
            {
                "userId": user.id,
                "email": user.email,
                "token": token,
                "expiresInMinutes": self.settings.password_reset_ttl_minutes,
            },
        )
        return Ok(token)

    async def reset_password(self, token: str, new_password: str) -> Outcome[str]:
        checked = self.one_time.validate(token, OneTimeTokenPurpose.RESET)
        if not checked.ok:
            return checked
        password_hash = await self.verifier.hash_password(new_password)
        consumed = self.one_time.consume(
            token,
            OneTimeTokenPurpose.RESET,
            OneTimeEffect(password_hash=password_hash, reset_login_attempts=True),
        )
        if consumed.ok:
            logger.info("password_reset_completed", user_id=consumed.value)
        return consumed

    async def request_email_verification(self, user_id: str) -> Outcome[str]:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            return fail(AuthErrorCode.USER_NOT_FOUND, "user not found")
        if user.email_verified:
            return fail(AuthErrorCode.BAD_REQUEST, "email already verified")
        token = self.one_time.issue(user.id, OneTimeTokenPurpose.VERIFY)
        await publish_safely(
            self.publisher,
            EMAIL_VERIFICATION_REQUESTED,
            {
                "userId": user.id,
                "email": user.email,
                "token": token,
                "expiresInHours": self.settings.email_verification_ttl_hours,
            },
        )
        return Ok(token)

    async def verify_email(self, token: str) -> Outcome[str]:
        consumed = self.one_time.consume(
            token, OneTimeTokenPurpose.VERIFY, OneTimeEffect(mark_email_verified=True)
        )
        if consumed.ok:
            logger.info("email_verified", user_id=consumed.value)
        return consumed

    # google -------------------------------------------------------------------

    async def start_google_login(self) -> Outcome[OAuthStart]:
        state = self.oauth_states.issue_state()
        try:
            url = self.identity.authorization_url(state)
        except ValueError as exc:
            self.oauth_states.redeem(state)
            return fail(AuthErrorCode.SERVER_ERROR, str(exc))
        return Ok(OAuthStart(authorization_url=url, state=state))

    async def complete_google_login(self, state: str, code: str) -> Outcome[AuthSession]:
        redeemed = self.oauth_states.redeem(state)
        if not redeemed.ok:
            return redeemed
        if not code:
            return fail(AuthErrorCode.BAD_REQUEST, "missing authorization code")
        try:
            assertion = await self.identity.exchange(code)
        except IdentityExchangeError as exc:
            logger.error("google_login_exchange_failed", error=str(exc))
            return fail(AuthErrorCode.SERVER_ERROR, "identity provider exchange failed")
        if not assertion.email_verified:
            return fail(AuthErrorCode.BAD_REQUEST, "Google account email is not verified")

        user = self.store.find_user_by_google_id(assertion.subject_id)
        if user is not None:
            return Ok(self._session_for(user))

        existing = self.store.find_user_by_email(assertion.email)
        if existing is not None:
            self.store.link_google_account(existing.id, assertion.subject_id, assertion.picture)
            logger.info("google_account_linked", user_id=existing.id)
            linked = self.store.find_user_by_id(existing.id) or existing
            return Ok(self._session_for(linked))

        try:
            user = self.store.create_user(
                assertion.email,
                assertion.name or default_display_name(assertion.email),
                OAuthOnly(provider="google"),
                email_verified=True,
                google_id=assertion.subject_id,
                picture_url=assertion.picture,
            )
        except ConstraintViolation:
            return fail(AuthErrorCode.EMAIL_EXISTS, "email already registered")
        logger.info("user_signed_up", user_id=user.id, provider="google")
        session = self._session_for(user, first_login=True)
        await self._announce_user(user, "google")
        return Ok(session)
