"""Refresh token rotation, revocation and concurrency tests."""

import threading
from datetime import timedelta

import pytest

from authsvc.service.errors import AuthErrorCode
from authsvc.service.sessions import RefreshSessionStore
from authsvc.storage.models import PasswordCredential, token_digest


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("s@example.com", "session user", PasswordCredential("x"))


@pytest.fixture
def sessions(memory_store, clock):
    return RefreshSessionStore(memory_store, clock, timedelta(days=7))


class TestRefreshRotation:
    def test_open_stores_only_the_digest(self, sessions, memory_store, user):
        value, row = sessions.open(user.id)
        assert row.token_hash == token_digest(value)
        assert value not in memory_store.refresh_tokens
        assert memory_store.find_refresh_token(token_digest(value)) is not None

    def test_rotation_revokes_old_and_issues_new(self, sessions, memory_store, user):
        value, _ = sessions.open(user.id)

        rotated = sessions.rotate(value)
        assert rotated.ok
        assert rotated.value.user.id == user.id
        assert memory_store.find_refresh_token(token_digest(value)).revoked
        assert not memory_store.find_refresh_token(rotated.value.row.token_hash).revoked

    def test_second_use_of_rotated_token_fails(self, sessions, user):
        value, _ = sessions.open(user.id)
        assert sessions.rotate(value).ok
        assert sessions.rotate(value).code is AuthErrorCode.INVALID_TOKEN

    def test_unknown_and_empty_tokens_are_invalid(self, sessions):
        assert sessions.rotate("no-such-token").code is AuthErrorCode.INVALID_TOKEN
        assert sessions.rotate("").code is AuthErrorCode.INVALID_TOKEN

    def test_expired_token_is_rejected_and_revoked(self, sessions, memory_store, user, clock):
        value, _ = sessions.open(user.id)
        clock.advance(days=7)

        result = sessions.rotate(value)
        assert result.code is AuthErrorCode.TOKEN_EXPIRED
        assert memory_store.find_refresh_token(token_digest(value)).revoked

    def test_token_of_deleted_user_is_revoked(self, sessions, memory_store, user):
        value, _ = sessions.open(user.id)
        del memory_store.users[user.id]

        assert sessions.rotate(value).code is AuthErrorCode.INVALID_TOKEN
        assert memory_store.find_refresh_token(token_digest(value)).revoked

    def test_concurrent_rotation_has_exactly_one_winner(self, sessions, user):
        value, _ = sessions.open(user.id)
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            outcome = sessions.rotate(value)
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [r for r in results if r.ok]
        assert len(winners) == 1
        assert all(r.code is AuthErrorCode.INVALID_TOKEN for r in results if not r.ok)
        assert sessions.rotate(winners[0].value.refresh_token).ok


class TestRefreshRevocation:
    def test_revoke_is_idempotent(self, sessions, memory_store, user):
        value, _ = sessions.open(user.id)
        sessions.revoke(value)
        sessions.revoke(value)
        sessions.revoke("never-issued")

        assert memory_store.find_refresh_token(token_digest(value)).revoked
        assert sessions.rotate(value).code is AuthErrorCode.INVALID_TOKEN

    def test_revoke_all_only_touches_one_user(self, sessions, memory_store, user):
        other = memory_store.create_user("o@example.com", "other", PasswordCredential("x"))
        mine = [sessions.open(user.id)[0] for _ in range(3)]
        theirs, _ = sessions.open(other.id)

        assert sessions.revoke_all(user.id) == 3
        assert sessions.revoke_all(user.id) == 0
        for value in mine:
            assert sessions.rotate(value).code is AuthErrorCode.INVALID_TOKEN
        assert sessions.rotate(theirs).ok

    def test_reuse_detection_revokes_every_session_when_enabled(
        self, memory_store, clock, user
    ):
        sessions = RefreshSessionStore(
            memory_store, clock, timedelta(days=7), reuse_revokes_all=True
        )
        stolen, _ = sessions.open(user.id)
        rotated = sessions.rotate(stolen).value
        bystander, _ = sessions.open(user.id)

        assert sessions.rotate(stolen).code is AuthErrorCode.INVALID_TOKEN
        assert sessions.rotate(rotated.refresh_token).code is AuthErrorCode.INVALID_TOKEN
        assert sessions.rotate(bystander).code is AuthErrorCode.INVALID_TOKEN
        assert all(row.revoked for row in memory_store.list_refresh_tokens(user.id))

    def test_reuse_without_flag_leaves_other_sessions(self, sessions, user):
        stolen, _ = sessions.open(user.id)
        rotated = sessions.rotate(stolen).value

        assert sessions.rotate(stolen).code is AuthErrorCode.INVALID_TOKEN
        assert sessions.rotate(rotated.refresh_token).ok

    def test_purge_removes_revoked_and_expired_rows(self, sessions, memory_store, user, clock):
        live, _ = sessions.open(user.id)
        revoked, _ = sessions.open(user.id)
        sessions.revoke(revoked)

        assert memory_store.purge_expired(clock.now()) == 1
        assert memory_store.find_refresh_token(token_digest(live)) is not None

        clock.advance(days=8)
        assert memory_store.purge_expired(clock.now()) == 1
        assert memory_store.list_refresh_tokens(user.id) == []
