from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authsvc.config import Settings, get_settings, reset_settings_cache
from authsvc.logging import get_logger
from authsvc.service.auth import AuthService
from authsvc.service.clock import Clock, SystemClock
from authsvc.service.events import EventPublisher, LoggingEventPublisher, RedisEventPublisher
from authsvc.service.lockout import LockoutPolicy
from authsvc.service.oauth import GoogleIdentityProvider
from authsvc.service.oauth_state import OAuthStateGuard
from authsvc.service.one_time import OneTimeTokenManager
from authsvc.service.passwords import CredentialVerifier
from authsvc.service.rate_limit import FixedWindowRateLimiter, RateLimiter, RedisRateLimiter
from authsvc.service.sessions import RefreshSessionStore
from authsvc.service.tokens import AccessTokenCodec, TokenIssuer
from authsvc.storage.base import AuthStore
from authsvc.storage.memory import MemoryStore
from authsvc.storage.models import OneTimeTokenPurpose
from authsvc.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store, side channels and engine components for the app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        clock: Optional[Clock] = None,
        publisher: Optional[EventPublisher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock: Clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: AuthStore = store or self._build_store()
        self.publisher: EventPublisher = publisher or self._build_publisher()

        s = self.settings
        self.lockout = LockoutPolicy(s.lockout_threshold, timedelta(minutes=s.lockout_window_minutes))
        self.verifier = CredentialVerifier(
            self.store, self.lockout, self.clock, time_cost=s.password_hash_time_cost
        )
        self.sessions = RefreshSessionStore(
            self.store,
            self.clock,
            timedelta(days=s.refresh_token_ttl_days),
            reuse_revokes_all=s.refresh_reuse_revokes_all,
        )
        self.codec = AccessTokenCodec(
            s.jwt_secret or "",
            issuer=s.jwt_issuer,
            audience=s.jwt_audience,
            ttl=timedelta(minutes=s.access_token_ttl_minutes),
            leeway=timedelta(seconds=s.token_leeway_seconds),
            clock=self.clock,
        )
        self.issuer = TokenIssuer(self.codec, self.sessions)
        self.one_time = OneTimeTokenManager(
            self.store,
            self.clock,
            {
                OneTimeTokenPurpose.RESET: timedelta(minutes=s.password_reset_ttl_minutes),
                OneTimeTokenPurpose.VERIFY: timedelta(hours=s.email_verification_ttl_hours),
            },
            revoke_all=self.issuer.revoke_all,
        )
        self.oauth_states = OAuthStateGuard(
            self.clock,
            timedelta(minutes=s.oauth_state_ttl_minutes),
            sweep_interval_seconds=s.oauth_state_sweep_seconds,
        )
        self.identity = GoogleIdentityProvider(s)
        self.rate_limiter: RateLimiter = self._build_rate_limiter()
        self.auth = AuthService(
            self.store,
            s,
            clock=self.clock,
            verifier=self.verifier,
            issuer=self.issuer,
            one_time=self.one_time,
            oauth_states=self.oauth_states,
            identity=self.identity,
            publisher=self.publisher,
            rate_limiter=self.rate_limiter,
        )

    def _build_store(self) -> AuthStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            store: AuthStore = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_publisher(self) -> EventPublisher:
        if not self.settings.redis_url:
            logger.info("event_publisher_logging_only")
            return LoggingEventPublisher()
        logger.info(
            "event_publisher_redis",
            redis_url=_mask_url_password(self.settings.redis_url),
            channel=self.settings.events_channel,
        )
        return RedisEventPublisher(self.settings.redis_url, self.settings.events_channel)

    def _build_rate_limiter(self) -> RateLimiter:
        if not self.settings.redis_url:
            logger.info("rate_limiter_in_process")
            return FixedWindowRateLimiter(self.clock)
        logger.info("rate_limiter_redis", redis_url=_mask_url_password(self.settings.redis_url))
        return RedisRateLimiter.from_url(self.settings.redis_url)

    async def start(self) -> None:
        self.oauth_states.start_sweeper()

    async def close(self) -> None:
        await self.oauth_states.stop_sweeper()
        if isinstance(self.publisher, RedisEventPublisher):
            self.publisher.close()
        if isinstance(self.rate_limiter, RedisRateLimiter):
            self.rate_limiter.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment. TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
