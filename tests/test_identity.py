from datetime import timedelta

import pytest

from laos.service.identity import AuthenticatedPrincipal, IdentityResolver
from laos.service.tokens import LocalIdentity, SocialIdentity, TokenCodec
from laos.storage.memory import MemoryStore
from laos.storage.models import Provider, Role

SECRET = "identity-test-secret-that-is-long-enough-0123"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec():
    return TokenCodec(
        SECRET, access_ttl=timedelta(minutes=30), refresh_ttl=timedelta(days=14)
    )


@pytest.fixture
def resolver(codec, store):
    return IdentityResolver(codec, store)


class TestIdentityResolver:
    def test_resolves_local_account_by_id(self, codec, store, resolver):
        alice = store.create_account(local_id="alice", password_hash="x", nickname="alice")

        principal = resolver.resolve(codec.issue_access(LocalIdentity(alice.id)))

        assert principal == AuthenticatedPrincipal(
            username="alice", role=Role.USER, account_id=alice.id
        )
        assert not principal.is_admin

    def test_resolves_social_account_by_email_and_provider(self, codec, store, resolver):
        bob = store.create_account(provider=Provider.GOOGLE, email="bob@x.com", nickname="Bob")

        principal = resolver.resolve(
            codec.issue_access(SocialIdentity(email="bob@x.com", provider=Provider.GOOGLE))
        )

        assert principal.account_id == bob.id
        assert principal.username == "bob@x.com"

    def test_social_claim_does_not_match_other_provider(self, codec, store, resolver):
        store.create_account(
            local_id="bob", password_hash="x", email="bob@x.com", nickname="bob"
        )
        token = codec.issue_access(SocialIdentity(email="bob@x.com", provider=Provider.GOOGLE))

        assert resolver.resolve(token) is None

    def test_username_prefers_email(self, codec, store, resolver):
        account = store.create_account(
            local_id="carol", password_hash="x", email="carol@x.com", nickname="carol"
        )
        principal = resolver.resolve(codec.issue_access(LocalIdentity(account.id)))
        assert principal.username == "carol@x.com"

    def test_deleted_account_resolves_to_nothing(self, codec, store, resolver):
        alice = store.create_account(local_id="alice", password_hash="x", nickname="alice")
        token = codec.issue_access(LocalIdentity(alice.id))
        store.delete_account(alice.id)

        assert codec.validate(token)
        assert resolver.resolve(token) is None

    def test_numeric_id_is_used_even_when_email_is_present(self, codec, store, resolver):
        alice = store.create_account(local_id="alice", password_hash="x", nickname="alice")
        store.create_account(provider=Provider.GOOGLE, email="other@x.com", nickname="o")
        now = int(codec._clock())
        token = codec._encode(
            {
                "sub": "AccessToken",
                "iat": now,
                "exp": now + 60,
                "userNum": alice.id,
                "email": "other@x.com",
                "provider": "GOOGLE",
            }
        )

        assert resolver.resolve(token).account_id == alice.id

    def test_id_token_and_email_token_resolve_independently(self, codec, store, resolver):
        local = store.create_account(
            local_id="bob", password_hash="x", email="bob@x.com", nickname="bob"
        )
        social = store.create_account(provider=Provider.GOOGLE, email="bob@x.com", nickname="Bob")
        by_id = codec.issue_access(LocalIdentity(local.id))
        by_email = codec.issue_access(SocialIdentity(email="bob@x.com", provider=Provider.GOOGLE))

        assert resolver.resolve(by_id).account_id == local.id
        assert resolver.resolve(by_email).account_id == social.id

        # A missing id never falls back to the account holding the same email
        store.delete_account(local.id)
        assert resolver.resolve(by_id) is None
        assert resolver.resolve(by_email).account_id == social.id

    def test_refresh_and_invalid_tokens_resolve_to_nothing(self, codec, resolver):
        assert resolver.resolve(codec.issue_refresh()) is None
        assert resolver.resolve("not.a.token") is None
        assert resolver.resolve(None) is None

    def test_admin_role_carried_on_principal(self, codec, store, resolver):
        admin = store.create_account(
            local_id="root", password_hash="x", nickname="root", role=Role.ADMIN
        )
        principal = resolver.resolve(codec.issue_access(LocalIdentity(admin.id)))
        assert principal.is_admin
