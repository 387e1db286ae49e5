"""Tests for issuing, rotating and revoking refresh tokens."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from laos.service.errors import IdentityNotFound, RefreshInvalid, RefreshNotRecognized
from laos.service.lifecycle import TokenLifecycleManager
from laos.service.tokens import LocalIdentity, SocialIdentity, TokenCodec, TokenKind
from laos.storage.memory import MemoryStore
from laos.storage.models import Account, Provider

SECRET = "lifecycle-test-secret-that-is-long-enough-01"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(
        SECRET,
        access_ttl=timedelta(minutes=30),
        refresh_ttl=timedelta(days=14),
        clock=clock,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def lifecycle(codec, store):
    return TokenLifecycleManager(codec, store)


@pytest.fixture
def alice(store):
    return store.create_account(local_id="alice", password_hash="x", nickname="alice")


class TestIssue:
    def test_issue_stores_refresh_token(self, codec, store, lifecycle, alice):
        pair = lifecycle.issue_for(alice)

        assert store.find_by_id(alice.id).refresh_token == pair.refresh_token
        assert codec.token_kind(pair.refresh_token) == TokenKind.REFRESH
        assert codec.extract_claims(pair.access_token) == LocalIdentity(alice.id)

    def test_issue_for_social_account_uses_email_claim(self, codec, store, lifecycle):
        bob = store.create_account(provider=Provider.GOOGLE, email="bob@x.com", nickname="Bob")

        pair = lifecycle.issue_for(bob)

        assert codec.extract_claims(pair.access_token) == SocialIdentity(
            email="bob@x.com", provider=Provider.GOOGLE
        )

    def test_new_login_replaces_previous_session(self, store, lifecycle, alice):
        first = lifecycle.issue_for(alice)
        second = lifecycle.issue_for(alice)

        assert store.find_by_id(alice.id).refresh_token == second.refresh_token
        with pytest.raises(RefreshNotRecognized):
            lifecycle.rotate(first.refresh_token)

    def test_issue_for_missing_account(self, lifecycle):
        with pytest.raises(IdentityNotFound):
            lifecycle.issue_for(Account(id=999))

    def test_social_account_without_email_cannot_be_identified(self):
        with pytest.raises(ValueError):
            TokenLifecycleManager.identity_for(Account(id=3, provider=Provider.GOOGLE))


class TestRotate:
    def test_rotate_returns_fresh_pair(self, codec, store, lifecycle, alice):
        pair = lifecycle.issue_for(alice)

        rotation = lifecycle.rotate(pair.refresh_token)

        assert rotation.account.id == alice.id
        assert rotation.tokens.refresh_token != pair.refresh_token
        assert store.find_by_id(alice.id).refresh_token == rotation.tokens.refresh_token
        assert codec.extract_claims(rotation.tokens.access_token) == LocalIdentity(alice.id)

    def test_rotated_token_cannot_be_replayed(self, lifecycle, alice):
        pair = lifecycle.issue_for(alice)
        second = lifecycle.rotate(pair.refresh_token)

        with pytest.raises(RefreshNotRecognized):
            lifecycle.rotate(pair.refresh_token)

        third = lifecycle.rotate(second.tokens.refresh_token)
        assert third.tokens.refresh_token != second.tokens.refresh_token

    def test_access_token_is_not_a_refresh_token(self, store, lifecycle, alice):
        pair = lifecycle.issue_for(alice)

        with pytest.raises(RefreshInvalid):
            lifecycle.rotate(pair.access_token)
        assert store.find_by_id(alice.id).refresh_token == pair.refresh_token

    def test_expired_refresh_token_is_invalid(self, clock, lifecycle, alice):
        pair = lifecycle.issue_for(alice)
        clock.now += timedelta(days=14).total_seconds() + 1

        with pytest.raises(RefreshInvalid):
            lifecycle.rotate(pair.refresh_token)

    def test_garbage_is_invalid(self, lifecycle):
        with pytest.raises(RefreshInvalid):
            lifecycle.rotate("not-a-token")

    def test_unissued_refresh_token_is_not_recognized(self, codec, lifecycle, alice):
        lifecycle.issue_for(alice)
        with pytest.raises(RefreshNotRecognized):
            lifecycle.rotate(codec.issue_refresh())

    def test_concurrent_rotation_has_single_winner(self, store, lifecycle, alice):
        pair = lifecycle.issue_for(alice)
        workers = 16
        barrier = threading.Barrier(workers)

        def attempt(_):
            barrier.wait()
            try:
                return lifecycle.rotate(pair.refresh_token)
            except RefreshNotRecognized:
                return None

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert store.find_by_id(alice.id).refresh_token == winners[0].tokens.refresh_token


class TestInvalidate:
    def test_invalidate_clears_stored_token(self, store, lifecycle, alice):
        pair = lifecycle.issue_for(alice)

        assert lifecycle.invalidate(alice.id) is True
        assert store.find_by_id(alice.id).refresh_token is None
        with pytest.raises(RefreshNotRecognized):
            lifecycle.rotate(pair.refresh_token)

    def test_invalidate_unknown_account(self, lifecycle):
        assert lifecycle.invalidate(12345) is False

    def test_access_token_survives_invalidate(self, codec, lifecycle, alice):
        pair = lifecycle.issue_for(alice)
        lifecycle.invalidate(alice.id)
        assert codec.validate(pair.access_token)
