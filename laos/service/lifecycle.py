from __future__ import annotations

from dataclasses import dataclass

from laos.logging import get_logger
from laos.service.errors import IdentityNotFound, RefreshInvalid, RefreshNotRecognized
from laos.service.identity import AccountDirectory
from laos.service.tokens import (
    IdentityClaim,
    LocalIdentity,
    SocialIdentity,
    TokenCodec,
    TokenKind,
    TokenPair,
)
from laos.storage.models import Account

logger = get_logger(__name__)


@dataclass(frozen=True)
class Rotation:
    account: Account
    tokens: TokenPair


class TokenLifecycleManager:
    """Issues, rotates and revokes the refresh token stored on each account.

    This is the only component that writes ``Account.refresh_token``. An
    account holds at most one live refresh token, so issuing a new pair ends
    whatever session held the previous one.
    """

    def __init__(self, codec: TokenCodec, store: AccountDirectory) -> None:
        self.codec = codec
        self.store = store

    @staticmethod
    def identity_for(account: Account) -> IdentityClaim:
        if account.is_local:
            return LocalIdentity(account_id=account.id)
        if not account.email:
            raise ValueError(f"social account {account.id} has no email")
        return SocialIdentity(email=account.email, provider=account.provider)

    def issue_for(self, account: Account) -> TokenPair:
        refresh_token = self.codec.issue_refresh()
        if not self.store.set_refresh_token(account.id, refresh_token):
            raise IdentityNotFound("account no longer exists")
        access_token = self.codec.issue_access(self.identity_for(account))
        logger.info("tokens_issued", account_id=account.id, provider=account.provider.value)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def rotate(self, presented: str) -> Rotation:
        """Exchange a refresh token for a new pair.

        The swap on the directory is a compare-and-set keyed on ``presented``:
        of any number of concurrent rotations with the same token exactly one
        sees its value replaced, the rest find nothing to replace.
        """
        if self.codec.token_kind(presented) != TokenKind.REFRESH:
            logger.info("refresh_invalid")
            raise RefreshInvalid("refresh token is invalid or expired; please log in again")

        new_refresh = self.codec.issue_refresh()
        account = self.store.swap_refresh_token(presented, new_refresh)
        if account is None:
            logger.warning("refresh_not_recognized")
            raise RefreshNotRecognized(
                "refresh token is no longer recognized; please log in again"
            )
        access_token = self.codec.issue_access(self.identity_for(account))
        logger.info("refresh_rotated", account_id=account.id)
        return Rotation(
            account=account,
            tokens=TokenPair(access_token=access_token, refresh_token=new_refresh),
        )

    def invalidate(self, account_id: int) -> bool:
        cleared = self.store.set_refresh_token(account_id, None)
        logger.info("refresh_invalidated", account_id=account_id, cleared=cleared)
        return cleared
