"""Rate limiting, event publishing and Google identity exchange."""

import json
from datetime import timedelta

import httpx
import pytest

from authsvc.service.errors import AuthErrorCode, IdentityExchangeError
from authsvc.service.events import (
    PASSWORD_RESET_REQUESTED,
    USER_CREATED,
    LoggingEventPublisher,
    RedisEventPublisher,
    publish_safely,
)
from authsvc.service.oauth import GOOGLE, GoogleIdentityProvider, parse_google_userinfo
from authsvc.service.rate_limit import FixedWindowRateLimiter, RedisRateLimiter
from authsvc.service.runtime import Runtime


class TestFixedWindowRateLimiter:
    def test_allows_up_to_limit_then_rejects(self, clock):
        limiter = FixedWindowRateLimiter(clock)
        remaining = [limiter.hit("k", 3, timedelta(minutes=1)).value for _ in range(3)]
        assert remaining == [2, 1, 0]

        rejected = limiter.hit("k", 3, timedelta(minutes=1))
        assert rejected.code is AuthErrorCode.TOO_MANY_REQUESTS
        assert rejected.detail["retry_after"] == 60

    def test_window_resets(self, clock):
        limiter = FixedWindowRateLimiter(clock)
        for _ in range(3):
            limiter.hit("k", 3, timedelta(minutes=1))
        clock.advance(minutes=1)
        assert limiter.hit("k", 3, timedelta(minutes=1)).ok

    def test_keys_are_independent(self, clock):
        limiter = FixedWindowRateLimiter(clock)
        limiter.hit("a", 1, timedelta(minutes=1))
        assert limiter.hit("b", 1, timedelta(minutes=1)).ok
        limiter.reset("a")
        assert limiter.hit("a", 1, timedelta(minutes=1)).ok

    def test_expired_windows_are_evicted_on_hit(self, clock):
        limiter = FixedWindowRateLimiter(clock)
        for n in range(500):
            limiter.hit(f"login:user{n}@example.com", 5, timedelta(minutes=1))
        assert len(limiter) == 500

        clock.advance(minutes=2)
        limiter.hit("login:late@example.com", 5, timedelta(minutes=1))
        assert len(limiter) == 1

    def test_eviction_keeps_open_windows(self, clock):
        limiter = FixedWindowRateLimiter(clock)
        limiter.hit("reset:a@example.com", 3, timedelta(hours=1))
        limiter.hit("login:a@example.com", 3, timedelta(minutes=1))
        clock.advance(minutes=5)
        limiter.hit("login:b@example.com", 3, timedelta(minutes=1))

        assert len(limiter) == 2
        assert limiter.hit("reset:a@example.com", 3, timedelta(hours=1)).value == 1


class FakeScriptRedis:
    """Evaluates the fixed-window script against plain dicts."""

    def __init__(self):
        self.counts = {}
        self.ttls = {}
        self.closed = False

    def register_script(self, script):
        assert "INCR" in script

        def run(keys, args):
            key, window = keys[0], int(args[0])
            self.counts[key] = self.counts.get(key, 0) + 1
            if self.counts[key] == 1 or key not in self.ttls:
                self.ttls[key] = window
            return [self.counts[key], self.ttls[key]]

        return run

    def elapse(self, seconds):
        for key in list(self.ttls):
            self.ttls[key] -= seconds
            if self.ttls[key] <= 0:
                del self.ttls[key]
                del self.counts[key]

    def delete(self, key):
        self.counts.pop(key, None)
        self.ttls.pop(key, None)

    def close(self):
        self.closed = True


class TestRedisRateLimiter:
    def test_counts_are_shared_between_limiters(self):
        fake = FakeScriptRedis()
        first, second = RedisRateLimiter(fake), RedisRateLimiter(fake)
        assert first.hit("login:a@example.com", 2, timedelta(minutes=1)).value == 1
        assert second.hit("login:a@example.com", 2, timedelta(minutes=1)).value == 0

        rejected = first.hit("login:a@example.com", 2, timedelta(minutes=1))
        assert rejected.code is AuthErrorCode.TOO_MANY_REQUESTS
        assert rejected.detail["retry_after"] == 60

    def test_retry_after_follows_remaining_ttl(self):
        fake = FakeScriptRedis()
        limiter = RedisRateLimiter(fake)
        limiter.hit("k", 1, timedelta(minutes=1))
        fake.elapse(45)
        assert limiter.hit("k", 1, timedelta(minutes=1)).detail["retry_after"] == 15

        fake.elapse(15)
        assert limiter.hit("k", 1, timedelta(minutes=1)).ok

    def test_keys_are_hashed_and_resettable(self):
        fake = FakeScriptRedis()
        limiter = RedisRateLimiter(fake)
        limiter.hit("login:a@example.com", 1, timedelta(minutes=1))

        (stored,) = fake.counts
        assert stored.startswith("rate:")
        assert "example.com" not in stored

        limiter.reset("login:a@example.com")
        assert limiter.hit("login:a@example.com", 1, timedelta(minutes=1)).ok

        limiter.close()
        assert fake.closed

    def test_runtime_uses_redis_when_configured(self, settings, memory_store, clock, publisher):
        with_redis = settings.model_copy(update={"redis_url": "redis://localhost:6379/0"})
        runtime = Runtime(with_redis, store=memory_store, clock=clock, publisher=publisher)
        assert isinstance(runtime.rate_limiter, RedisRateLimiter)
        assert runtime.auth.rate_limiter is runtime.rate_limiter

        without = Runtime(settings, store=memory_store, clock=clock, publisher=publisher)
        assert isinstance(without.rate_limiter, FixedWindowRateLimiter)


class FakeRedis:
    def __init__(self, error=None):
        self.error = error
        self.messages = []
        self.closed = False

    def publish(self, channel, message):
        if self.error:
            raise self.error
        self.messages.append((channel, message))
        return 1

    def close(self):
        self.closed = True


def _redis_publisher(fake):
    publisher = RedisEventPublisher.__new__(RedisEventPublisher)
    publisher.channel = "user-events"
    publisher.client = fake
    return publisher


class TestEventPublishing:
    async def test_redis_envelope_carries_type_and_timestamp(self):
        fake = FakeRedis()
        publisher = _redis_publisher(fake)

        assert await publish_safely(publisher, USER_CREATED, {"userId": "u1"})
        channel, raw = fake.messages[0]
        message = json.loads(raw)
        assert channel == "user-events"
        assert message["eventType"] == USER_CREATED
        assert message["userId"] == "u1"
        assert message["timestamp"]

        publisher.close()
        assert fake.closed

    async def test_publish_failure_is_reported_not_raised(self):
        publisher = _redis_publisher(FakeRedis(error=ConnectionError("down")))
        assert await publish_safely(publisher, USER_CREATED, {"userId": "u1"}) is False

    async def test_logging_publisher_keeps_nothing(self, monkeypatch):
        from authsvc.service import events

        logged = []

        class ListLogger:
            def info(self, event, **kw):
                logged.append((event, kw))

        monkeypatch.setattr(events, "logger", ListLogger())
        publisher = LoggingEventPublisher()
        for n in range(100):
            await publish_safely(publisher, PASSWORD_RESET_REQUESTED, {"userId": f"u{n}", "token": "secret"})

        assert vars(publisher) == {}
        assert len(logged) == 100
        assert logged[0] == ("event_published", {"event_type": PASSWORD_RESET_REQUESTED, "user_id": "u0"})
        assert all("secret" not in repr(kw) for _, kw in logged)


def _google_transport(token_status=200, userinfo=None):
    def handler(request):
        if str(request.url) == GOOGLE["token_url"]:
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "ya29.token"})
        if str(request.url) == GOOGLE["userinfo_url"]:
            assert request.headers["Authorization"] == "Bearer ya29.token"
            return httpx.Response(200, json=userinfo or {})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class TestGoogleIdentityProvider:
    async def test_exchange_reads_userinfo(self, settings):
        provider = GoogleIdentityProvider(
            settings,
            transport=_google_transport(
                userinfo={"sub": "123", "email": "Person@Example.com", "email_verified": True, "name": "P"}
            ),
        )
        assertion = await provider.exchange("auth-code")
        assert assertion.subject_id == "123"
        assert assertion.email == "person@example.com"
        assert assertion.email_verified is True

    async def test_rejected_code_raises_exchange_error(self, settings):
        provider = GoogleIdentityProvider(settings, transport=_google_transport(token_status=400))
        with pytest.raises(IdentityExchangeError):
            await provider.exchange("bad-code")

    async def test_registered_code_is_used_once(self, settings):
        from authsvc.service.oauth import IdentityAssertion

        provider = GoogleIdentityProvider(settings, transport=_google_transport(token_status=400))
        provider.register_code("c", IdentityAssertion("1", "a@example.com", True))
        assert (await provider.exchange("c")).subject_id == "1"
        with pytest.raises(IdentityExchangeError):
            await provider.exchange("c")

    def test_register_code_outside_test_mode(self, settings):
        from authsvc.service.oauth import IdentityAssertion

        production = settings.model_copy(update={"test_mode": False})
        provider = GoogleIdentityProvider(production)
        with pytest.raises(RuntimeError):
            provider.register_code("c", IdentityAssertion("1", "a@example.com", True))

    def test_authorization_url_rejects_insecure_redirect(self, settings):
        insecure = settings.model_copy(update={"oauth_redirect_uri": "http://evil.example.com/cb"})
        with pytest.raises(ValueError):
            GoogleIdentityProvider(insecure).authorization_url("s")

    def test_legacy_userinfo_fields(self):
        assertion = parse_google_userinfo({"id": "9", "email": "a@b.co", "verified_email": "true"})
        assert assertion.subject_id == "9"
        assert assertion.email_verified is True

    def test_userinfo_without_email_is_rejected(self):
        with pytest.raises(IdentityExchangeError):
            parse_google_userinfo({"sub": "9"})
