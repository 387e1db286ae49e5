from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from laos.logging import get_logger
from laos.service.email import EmailService, EmailVerificationService
from laos.service.errors import (
    ConflictError,
    IdentityNotFound,
    UpstreamError,
    ValidationError,
)
from laos.service.identity import AccountDirectory, AuthenticatedPrincipal
from laos.service.lifecycle import TokenLifecycleManager
from laos.service.oauth import GoogleIdentity, GoogleOAuthClient
from laos.service.tokens import TokenPair
from laos.storage.errors import ConstraintViolation
from laos.storage.models import Account, Provider, Role

logger = get_logger(__name__)


class AccountService:
    """Account-facing operations: registration, sign-in and profile changes.

    Token issuance and revocation are delegated to the lifecycle manager so
    that the stored refresh token has a single writer.
    """

    def __init__(
        self,
        store: AccountDirectory,
        lifecycle: TokenLifecycleManager,
        *,
        oauth: GoogleOAuthClient,
        email: EmailService,
        verification: EmailVerificationService,
        require_email_verification: bool = False,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.oauth = oauth
        self.email = email
        self.verification = verification
        self.require_email_verification = require_email_verification
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            logger.warning("password_record_missing", account_id=account.id)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.info("password_verification_failed", account_id=account.id)
            return False

    # registration / sign-in
    def send_verification_code(self, email: str) -> None:
        code = self.verification.issue_code(email)
        sent = self.email.send_verification_code(
            email, code, int(self.verification.ttl.total_seconds() // 60)
        )
        if not sent:
            raise UpstreamError("verification email could not be sent")

    def register(
        self,
        *,
        local_id: str,
        password: str,
        nickname: str,
        email: Optional[str] = None,
        email_code: Optional[str] = None,
    ) -> Account:
        if not local_id.strip() or not password or not nickname.strip():
            raise ValidationError("local id, password and nickname are required")
        if self.store.find_by_local_id(local_id):
            raise ConflictError("local id already in use", detail={"field": "local_id"})
        if self.store.find_by_nickname(nickname):
            raise ConflictError("nickname already in use", detail={"field": "nickname"})
        if email and self.store.find_by_email(email):
            raise ConflictError("email already in use", detail={"field": "email"})
        if self.require_email_verification and (
            not email or not self.verification.verify_code(email, email_code)
        ):
            raise ValidationError(
                "invalid or expired email verification code", detail={"field": "email_code"}
            )

        try:
            account = self.store.create_account(
                provider=Provider.LOCAL,
                local_id=local_id,
                password_hash=self.hash_password(password),
                email=email,
                nickname=nickname,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("account_registered", account_id=account.id)
        return account

    def login(self, local_id: str, password: str) -> Optional[Tuple[Account, TokenPair]]:
        if not local_id or not password:
            return None
        account = self.store.find_by_local_id(local_id)
        if account is None or not account.is_local:
            logger.info("login_unknown_local_id")
            return None
        if not self.verify_password(account, password):
            return None
        return account, self.lifecycle.issue_for(account)

    async def sign_in_with_google(self, code: str) -> Tuple[Account, TokenPair, bool]:
        """Exchange a Google authorization code and sign the account in.

        The first sign-in for an (email, GOOGLE) pair provisions the account;
        later sign-ins reuse it. Returns ``(account, tokens, created)``.
        """
        identity = await self.oauth.fetch_identity(code)
        return await asyncio.to_thread(self._provision_google_account, identity)

    def _provision_google_account(self, identity: GoogleIdentity) -> Tuple[Account, TokenPair, bool]:
        created = False
        account = self.store.find_by_email_and_provider(identity.email, Provider.GOOGLE)
        if account is None:
            try:
                account = self.store.create_account(
                    provider=Provider.GOOGLE,
                    email=identity.email,
                    nickname=identity.name,
                    social_id=identity.sub or None,
                )
                created = True
            except ConstraintViolation:
                # A concurrent first sign-in created it between our lookup and insert
                account = self.store.find_by_email_and_provider(identity.email, Provider.GOOGLE)
                if account is None:
                    raise
        tokens = self.lifecycle.issue_for(account)
        logger.info("social_sign_in", account_id=account.id, provider="GOOGLE", created=created)
        return account, tokens, created

    # principal operations
    def get_account(self, principal: AuthenticatedPrincipal) -> Account:
        account = self.store.find_by_id(principal.account_id)
        if account is None:
            raise IdentityNotFound("account not found")
        return account

    def update_profile(
        self,
        principal: AuthenticatedPrincipal,
        *,
        nickname: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Account:
        if nickname is None and password is None:
            raise ValidationError("nothing to update")
        account = self.get_account(principal)
        if nickname is not None:
            nickname = nickname.strip()
            if not nickname:
                raise ValidationError("nickname must not be blank", detail={"field": "nickname"})
            if nickname == account.nickname:
                raise ValidationError(
                    "nickname is the same as the current one", detail={"field": "nickname"}
                )
            holder = self.store.find_by_nickname(nickname)
            if holder is not None and holder.id != account.id:
                raise ConflictError("nickname already in use", detail={"field": "nickname"})
            account = replace(account, nickname=nickname)
        if password is not None:
            if not account.is_local:
                raise ValidationError(
                    "social accounts have no password", detail={"field": "password"}
                )
            account = replace(account, password_hash=self.hash_password(password))
        saved = self.store.save(account)
        if saved is None:
            raise IdentityNotFound("account not found")
        logger.info("account_updated", account_id=saved.id)
        return saved

    def set_role(self, account_id: int, role: Role) -> Optional[Account]:
        account = self.store.find_by_id(account_id)
        if account is None:
            return None
        saved = self.store.save(replace(account, role=role))
        logger.info("account_role_changed", account_id=account_id, role=role.value)
        return saved

    def logout(self, principal: AuthenticatedPrincipal) -> None:
        if not self.lifecycle.invalidate(principal.account_id):
            raise IdentityNotFound("account not found")

    def delete_account(self, principal: AuthenticatedPrincipal) -> None:
        self.lifecycle.invalidate(principal.account_id)
        if not self.store.delete_account(principal.account_id):
            raise IdentityNotFound("account not found")
        logger.info("account_deleted", account_id=principal.account_id)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        return self.store.list_accounts(limit=limit)
