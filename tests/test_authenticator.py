"""Tests for the per-request authentication decision."""

import asyncio
from datetime import timedelta

import pytest

from laos.service.authenticator import OutcomeKind, RequestAuthenticator, path_is_public
from laos.service.errors import RefreshInvalid, RefreshNotRecognized
from laos.service.identity import IdentityResolver
from laos.service.lifecycle import TokenLifecycleManager
from laos.service.tokens import TokenCodec, bearer
from laos.storage.memory import MemoryStore

SECRET = "authenticator-test-secret-long-enough-0123456"
PUBLIC_PATHS = ["/healthz", "/v1/login", "/v1/register"]


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
    # Refresh expires before access so the fall-through case can be exercised
    return TokenCodec(
        SECRET,
        access_ttl=timedelta(minutes=60),
        refresh_ttl=timedelta(minutes=10),
        clock=clock,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def lifecycle(codec, store):
    return TokenLifecycleManager(codec, store)


@pytest.fixture
def authenticator(codec, store, lifecycle):
    return RequestAuthenticator(
        codec,
        IdentityResolver(codec, store),
        lifecycle,
        access_header="Authorization",
        refresh_header="Authorization-Refresh",
        public_paths=PUBLIC_PATHS,
    )


@pytest.fixture
def alice(store):
    return store.create_account(local_id="alice", password_hash="x", nickname="alice")


def _headers(access=None, refresh=None):
    headers = {}
    if access:
        headers["Authorization"] = bearer(access)
    if refresh:
        headers["Authorization-Refresh"] = bearer(refresh)
    return headers


class TestPathIsPublic:
    def test_exact_and_nested_paths_match(self):
        assert path_is_public("/v1/login", PUBLIC_PATHS)
        assert path_is_public("/v1/login/extra", PUBLIC_PATHS)
        assert path_is_public("/healthz", PUBLIC_PATHS)

    def test_match_respects_segment_boundaries(self):
        assert not path_is_public("/v1/loginx", PUBLIC_PATHS)
        assert not path_is_public("/v1/me", PUBLIC_PATHS)
        assert not path_is_public("/", PUBLIC_PATHS)

    def test_root_prefix_opens_everything(self):
        assert path_is_public("/anything/at/all", ["/"])


class TestAuthenticate:
    async def test_public_path_skips_tokens(self, authenticator, lifecycle, store, alice):
        pair = lifecycle.issue_for(alice)

        outcome = await authenticator.authenticate(
            "/v1/login", _headers(refresh=pair.refresh_token)
        )

        assert outcome.kind == OutcomeKind.PUBLIC
        assert not outcome.terminates
        # No rotation happened
        assert store.find_by_id(alice.id).refresh_token == pair.refresh_token

    async def test_valid_access_token_authenticates(self, authenticator, lifecycle, alice):
        pair = lifecycle.issue_for(alice)

        outcome = await authenticator.authenticate("/v1/me", _headers(access=pair.access_token))

        assert outcome.kind == OutcomeKind.AUTHENTICATED
        assert outcome.principal.account_id == alice.id
        assert outcome.principal.username == "alice"

    async def test_no_headers_is_anonymous(self, authenticator):
        outcome = await authenticator.authenticate("/v1/me", {})
        assert outcome.kind == OutcomeKind.ANONYMOUS
        assert outcome.principal is None

    async def test_invalid_access_token_is_anonymous(self, authenticator):
        outcome = await authenticator.authenticate(
            "/v1/me", {"Authorization": "Bearer not.a.token"}
        )
        assert outcome.kind == OutcomeKind.ANONYMOUS

    async def test_access_token_for_deleted_account_is_anonymous(
        self, authenticator, lifecycle, store, alice
    ):
        pair = lifecycle.issue_for(alice)
        store.delete_account(alice.id)

        outcome = await authenticator.authenticate("/v1/me", _headers(access=pair.access_token))
        assert outcome.kind == OutcomeKind.ANONYMOUS

    async def test_refresh_token_rotates(self, authenticator, lifecycle, store, alice):
        pair = lifecycle.issue_for(alice)

        outcome = await authenticator.authenticate(
            "/v1/me", _headers(access=pair.access_token, refresh=pair.refresh_token)
        )

        assert outcome.kind == OutcomeKind.ROTATED
        assert outcome.terminates
        assert outcome.principal.account_id == alice.id
        assert outcome.tokens.refresh_token != pair.refresh_token
        assert store.find_by_id(alice.id).refresh_token == outcome.tokens.refresh_token

    async def test_replayed_refresh_token_is_rejected(self, authenticator, lifecycle, alice):
        pair = lifecycle.issue_for(alice)
        await authenticator.authenticate("/v1/me", _headers(refresh=pair.refresh_token))

        outcome = await authenticator.authenticate(
            "/v1/me", _headers(access=pair.access_token, refresh=pair.refresh_token)
        )

        assert outcome.kind == OutcomeKind.REJECTED
        assert outcome.terminates
        assert isinstance(outcome.error, RefreshNotRecognized)

    async def test_access_token_in_refresh_header_is_rejected(
        self, authenticator, lifecycle, alice
    ):
        pair = lifecycle.issue_for(alice)

        outcome = await authenticator.authenticate("/v1/me", _headers(refresh=pair.access_token))

        assert outcome.kind == OutcomeKind.REJECTED
        assert isinstance(outcome.error, RefreshInvalid)

    async def test_expired_refresh_falls_through_to_access(
        self, clock, authenticator, lifecycle, store, alice
    ):
        pair = lifecycle.issue_for(alice)
        clock.now += timedelta(minutes=20).total_seconds()

        outcome = await authenticator.authenticate(
            "/v1/me", _headers(access=pair.access_token, refresh=pair.refresh_token)
        )

        assert outcome.kind == OutcomeKind.AUTHENTICATED
        assert store.find_by_id(alice.id).refresh_token == pair.refresh_token

    async def test_malformed_refresh_header_falls_through(
        self, authenticator, lifecycle, alice
    ):
        pair = lifecycle.issue_for(alice)

        outcome = await authenticator.authenticate(
            "/v1/me",
            {"Authorization": bearer(pair.access_token), "Authorization-Refresh": "garbage"},
        )
        assert outcome.kind == OutcomeKind.AUTHENTICATED

    async def test_concurrent_exchanges_rotate_once(self, authenticator, lifecycle, alice):
        pair = lifecycle.issue_for(alice)
        headers = _headers(refresh=pair.refresh_token)

        outcomes = await asyncio.gather(
            *(authenticator.authenticate("/v1/me", headers) for _ in range(8))
        )

        kinds = [o.kind for o in outcomes]
        assert kinds.count(OutcomeKind.ROTATED) == 1
        assert kinds.count(OutcomeKind.REJECTED) == 7
