from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Optional, Sequence

from laos.logging import get_logger
from laos.service.errors import RefreshNotRecognized, TokenInvalid
from laos.service.identity import AuthenticatedPrincipal, IdentityResolver
from laos.service.lifecycle import TokenLifecycleManager
from laos.service.tokens import TokenCodec, TokenPair, extract_bearer

logger = get_logger(__name__)


class OutcomeKind(str, Enum):
    PUBLIC = "public"
    ROTATED = "rotated"
    REJECTED = "rejected"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class AuthOutcome:
    kind: OutcomeKind
    principal: Optional[AuthenticatedPrincipal] = None
    tokens: Optional[TokenPair] = None
    error: Optional[Exception] = None

    @property
    def terminates(self) -> bool:
        """Whether the request is answered here instead of reaching a route."""
        return self.kind in (OutcomeKind.ROTATED, OutcomeKind.REJECTED)


def path_is_public(path: str, prefixes: Iterable[str]) -> bool:
    for prefix in prefixes:
        if prefix == "/":
            return True
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


class RequestAuthenticator:
    """Decides what each inbound request is before any route runs.

    Order matters: public paths skip everything, a valid refresh token turns
    the request into a token exchange, and only then is the access token used
    to establish a principal. Access-token problems never fail the request
    here; downstream authorization turns a missing principal into 401.
    """

    def __init__(
        self,
        codec: TokenCodec,
        resolver: IdentityResolver,
        lifecycle: TokenLifecycleManager,
        *,
        access_header: str,
        refresh_header: str,
        public_paths: Sequence[str],
    ) -> None:
        self.codec = codec
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.access_header = access_header
        self.refresh_header = refresh_header
        self.public_paths = tuple(public_paths)

    @classmethod
    def from_settings(
        cls,
        settings,
        codec: TokenCodec,
        resolver: IdentityResolver,
        lifecycle: TokenLifecycleManager,
    ) -> "RequestAuthenticator":
        return cls(
            codec,
            resolver,
            lifecycle,
            access_header=settings.access_token_header,
            refresh_header=settings.refresh_token_header,
            public_paths=settings.public_paths,
        )

    def is_public(self, path: str) -> bool:
        return path_is_public(path, self.public_paths)

    async def authenticate(self, path: str, headers: Mapping[str, str]) -> AuthOutcome:
        if self.is_public(path):
            return AuthOutcome(OutcomeKind.PUBLIC)

        refresh_token = extract_bearer(headers.get(self.refresh_header))
        if refresh_token and self.codec.validate(refresh_token):
            try:
                rotation = await asyncio.to_thread(self.lifecycle.rotate, refresh_token)
            except (TokenInvalid, RefreshNotRecognized) as exc:
                logger.info("refresh_rejected", path=path, reason=type(exc).__name__)
                return AuthOutcome(OutcomeKind.REJECTED, error=exc)
            return AuthOutcome(
                OutcomeKind.ROTATED,
                principal=AuthenticatedPrincipal.from_account(rotation.account),
                tokens=rotation.tokens,
            )

        access_token = extract_bearer(headers.get(self.access_header))
        if not access_token or not self.codec.validate(access_token):
            return AuthOutcome(OutcomeKind.ANONYMOUS)

        principal = await asyncio.to_thread(self.resolver.resolve, access_token)
        if principal is None:
            return AuthOutcome(OutcomeKind.ANONYMOUS)
        return AuthOutcome(OutcomeKind.AUTHENTICATED, principal=principal)
