from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from laos.logging import get_logger
from laos.service.tokens import IdentityClaim, LocalIdentity, SocialIdentity, TokenCodec
from laos.storage.models import Account, Provider, Role

logger = get_logger(__name__)


class AccountDirectory(Protocol):
    def find_by_id(self, account_id: int) -> Optional[Account]:
        ...

    def find_by_local_id(self, local_id: str) -> Optional[Account]:
        ...

    def find_by_email_and_provider(
        self, email: str, provider: Provider
    ) -> Optional[Account]:
        ...

    def find_by_email(self, email: str) -> Optional[Account]:
        ...

    def find_by_nickname(self, nickname: str) -> Optional[Account]:
        ...

    def find_by_refresh_token(self, token: str) -> Optional[Account]:
        ...

    def list_accounts(self, limit: int = 100) -> List[Account]:
        ...

    def create_account(
        self,
        *,
        provider: Provider = Provider.LOCAL,
        local_id: Optional[str] = None,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        nickname: Optional[str] = None,
        social_id: Optional[str] = None,
        role: Role = Role.USER,
    ) -> Account:
        ...

    def save(self, account: Account) -> Optional[Account]:
        ...

    def set_refresh_token(self, account_id: int, token: Optional[str]) -> bool:
        ...

    def swap_refresh_token(self, expected: str, new: str) -> Optional[Account]:
        ...

    def delete_account(self, account_id: int) -> bool:
        ...


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    username: str
    role: Role
    account_id: int

    @classmethod
    def from_account(cls, account: Account) -> "AuthenticatedPrincipal":
        return cls(username=account.username, role=account.role, account_id=account.id)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class IdentityResolver:
    """Maps access-token claims to the account they name.

    Lookups run in a fixed order (numeric account id, then email+provider) and
    never in parallel. A claim that names no account is a normal outcome.
    """

    def __init__(self, codec: TokenCodec, store: AccountDirectory) -> None:
        self.codec = codec
        self.store = store

    def resolve(self, token: Optional[str]) -> Optional[AuthenticatedPrincipal]:
        claim = self.codec.extract_claims(token)
        if claim is None:
            return None
        return self.resolve_claim(claim)

    def resolve_claim(self, claim: IdentityClaim) -> Optional[AuthenticatedPrincipal]:
        account: Optional[Account] = None
        if isinstance(claim, LocalIdentity):
            account = self.store.find_by_id(claim.account_id)
        elif isinstance(claim, SocialIdentity):
            account = self.store.find_by_email_and_provider(claim.email, claim.provider)
        if account is None:
            logger.info("identity_not_found", claim_type=type(claim).__name__)
            return None
        return AuthenticatedPrincipal.from_account(account)
