"""Tests for refresh-token issuance, rotation and replay detection."""

import threading
from datetime import timedelta

import pytest

from trafficsafety.service.errors import (
    AuthenticationError,
    ReplayDetectedError,
    TokenExpiredError,
    TokenRevokedError,
    UnknownTokenError,
)
from trafficsafety.service.refresh_tokens import RefreshTokenManager, hash_token
from trafficsafety.storage.models import User


@pytest.fixture
def manager(store, clock):
    return RefreshTokenManager(store, clock, default_ttl_seconds=3600)


@pytest.fixture
def user(store):
    return store.create_user("refresh@example.com", role="analyst")


class TestIssue:
    def test_issue_returns_secret_and_persists_only_hash(self, manager, store, user, clock):
        issued = manager.issue(user)

        assert len(issued.token) == 128
        assert issued.user_id == user.id
        assert issued.expires_at == clock.now() + timedelta(seconds=3600)
        record = store.get_refresh_token(issued.token_id)
        assert record.token_hash == hash_token(issued.token)
        assert record.token_hash != issued.token

    def test_default_ttl_is_fourteen_days(self, store, clock, user):
        manager = RefreshTokenManager(store, clock)
        issued = manager.issue(user)
        assert issued.expires_at - clock.now() == timedelta(days=14)

    def test_issue_rejects_bad_ttl(self, manager, user):
        with pytest.raises(ValueError):
            manager.issue(user, ttl_seconds=0)

    def test_issue_rejects_user_without_id(self, manager):
        with pytest.raises(ValueError):
            manager.issue(User(id=None, email="ghost@example.com"))


class TestGetActiveToken:
    def test_active_token_resolves(self, manager, user):
        issued = manager.issue(user)
        record = manager.get_active_token(issued.token)
        assert record.id == issued.token_id

    def test_unknown_token(self, manager):
        with pytest.raises(UnknownTokenError):
            manager.get_active_token("f" * 128)

    def test_revoked_token(self, manager, user):
        issued = manager.issue(user)
        assert manager.revoke_by_id(issued.token_id) is True
        with pytest.raises(TokenRevokedError) as exc:
            manager.get_active_token(issued.token)
        assert not isinstance(exc.value, ReplayDetectedError)

    def test_expired_token_is_revoked_with_reason(self, manager, store, user, clock):
        issued = manager.issue(user, ttl_seconds=60)
        clock.advance(seconds=60)
        with pytest.raises(TokenExpiredError):
            manager.get_active_token(issued.token)
        record = store.get_refresh_token(issued.token_id)
        assert record.revoked_reason == "expired"
        assert record.revoked_at == clock.now()


class TestRotation:
    def test_rotation_links_chain(self, manager, store, user):
        first = manager.issue(user)
        record = manager.get_active_token(first.token)

        second = manager.rotate_existing(record, user)

        old = store.get_refresh_token(first.token_id)
        assert old.revoked_reason == "rotated"
        assert old.replaced_by_token_id == second.token_id
        assert manager.get_active_token(second.token).id == second.token_id

    def test_replaying_rotated_token_revokes_chain(self, manager, store, user):
        first = manager.issue(user)
        second = manager.rotate_existing(manager.get_active_token(first.token), user)
        third = manager.rotate_existing(manager.get_active_token(second.token), user)

        with pytest.raises(ReplayDetectedError) as exc:
            manager.get_active_token(first.token)
        assert exc.value.reason == "refresh_token_revoked"
        assert exc.value.internal_reason == "replay"

        latest = store.get_refresh_token(third.token_id)
        assert latest.revoked_at is not None
        assert latest.revoked_reason == "replay"
        with pytest.raises(TokenRevokedError):
            manager.get_active_token(third.token)

    def test_rotate_stale_record_is_replay(self, manager, store, user):
        first = manager.issue(user)
        record = manager.get_active_token(first.token)
        second = manager.rotate_existing(record, user)

        with pytest.raises(ReplayDetectedError):
            manager.rotate_existing(record, user)
        assert store.get_refresh_token(second.token_id).revoked_reason == "replay"

    def test_owner_mismatch_revokes(self, manager, store, user):
        intruder = store.create_user("intruder@example.com")
        issued = manager.issue(user)
        record = manager.get_active_token(issued.token)

        with pytest.raises(AuthenticationError):
            manager.rotate_existing(record, intruder)
        assert store.get_refresh_token(issued.token_id).is_revoked()

    def test_concurrent_rotation_has_single_winner(self, manager, store, user):
        issued = manager.issue(user)
        record = manager.get_active_token(issued.token)
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def _rotate():
            barrier.wait()
            try:
                result = manager.rotate_existing(record, user)
            except ReplayDetectedError as exc:
                result = exc
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=_rotate) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        failures = [o for o in outcomes if isinstance(o, ReplayDetectedError)]
        successes = [o for o in outcomes if not isinstance(o, ReplayDetectedError)]
        assert len(successes) == 1
        assert len(failures) == 1
        # the loser revoked the whole chain, including the winner's successor
        winner = store.get_refresh_token(successes[0].token_id)
        assert winner.is_revoked()
        assert store.get_refresh_token(issued.token_id).is_revoked()


class TestRevocation:
    def test_revoke_for_user_checks_owner(self, manager, store, user):
        other = store.create_user("other@example.com")
        issued = manager.issue(user)

        assert manager.revoke_for_user(other.id, issued.token) is False
        assert manager.revoke_for_user(user.id, issued.token) is True
        assert manager.revoke_for_user(user.id, issued.token) is False
        assert store.get_refresh_token(issued.token_id).revoked_reason == "logout"

    def test_revoke_all_for_user(self, manager, user):
        tokens = [manager.issue(user) for _ in range(3)]
        manager.revoke_by_id(tokens[0].token_id)

        assert manager.revoke_all_for_user(user.id) == 2
        for issued in tokens:
            with pytest.raises(TokenRevokedError):
                manager.get_active_token(issued.token)

    def test_find_returns_record_in_any_state(self, manager, user):
        issued = manager.issue(user)
        manager.revoke_by_id(issued.token_id)
        assert manager.find(issued.token).id == issued.token_id
        assert manager.find("") is None

    def test_prune_expired_drops_only_lapsed_tokens(self, manager, user, clock):
        short = manager.issue(user, ttl_seconds=60)
        long = manager.issue(user)
        clock.advance(seconds=61)

        assert manager.prune_expired() == 1
        assert manager.find(short.token) is None
        assert manager.get_active_token(long.token).id == long.token_id
