"""Signed access/refresh tokens.

Tokens are compact HS512 JWTs built directly on ``hmac``. Access tokens carry
exactly one identity shape; refresh tokens carry none and are only meaningful
through the value stored on an account.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional, Union

from laos.logging import get_logger
from laos.storage.models import Provider

logger = get_logger(__name__)

ALGORITHM = "HS512"
BEARER_PREFIX = "Bearer "

CLAIM_ACCOUNT_ID = "userNum"
CLAIM_EMAIL = "email"
CLAIM_PROVIDER = "provider"


class TokenKind(str, Enum):
    ACCESS = "AccessToken"
    REFRESH = "RefreshToken"


@dataclass(frozen=True)
class LocalIdentity:
    account_id: int


@dataclass(frozen=True)
class SocialIdentity:
    email: str
    provider: Provider


IdentityClaim = Union[LocalIdentity, SocialIdentity]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Pull a JWT-shaped token out of an ``Authorization``-style header value.

    The ``Bearer`` scheme is matched case-insensitively. When a proxy has
    joined duplicate headers with a comma only the first value is used.
    Anything that is not three dot-separated segments counts as absent.
    """
    if not header:
        return None
    value = header.strip()
    if "," in value:
        value = value.split(",", 1)[0].strip()
    if value[: len(BEARER_PREFIX)].lower() != BEARER_PREFIX.lower():
        return None
    token = value[len(BEARER_PREFIX):].strip()
    if not token or token.count(".") != 2:
        return None
    return token


def bearer(token: str) -> str:
    return f"{BEARER_PREFIX}{token}"


class TokenCodec:
    def __init__(
        self,
        secret: str,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, *, clock: Callable[[], float] = time.time) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            clock=clock,
        )

    # issuing
    def issue_access(self, identity: IdentityClaim) -> str:
        payload = self._base_claims(TokenKind.ACCESS, self.access_ttl)
        if isinstance(identity, LocalIdentity):
            payload[CLAIM_ACCOUNT_ID] = identity.account_id
        elif isinstance(identity, SocialIdentity):
            payload[CLAIM_EMAIL] = identity.email
            payload[CLAIM_PROVIDER] = identity.provider.value
        else:
            raise TypeError(f"unsupported identity claim: {identity!r}")
        return self._encode(payload)

    def issue_refresh(self) -> str:
        return self._encode(self._base_claims(TokenKind.REFRESH, self.refresh_ttl))

    def _base_claims(self, kind: TokenKind, ttl: timedelta) -> dict[str, Any]:
        now = self._clock()
        return {
            "sub": kind.value,
            "iat": int(now),
            # Rounded up so the token never lapses before now + ttl
            "exp": math.ceil(now + ttl.total_seconds()),
            # Two tokens minted within the same second must still differ
            "jti": uuid.uuid4().hex,
        }

    # verification
    def validate(self, token: Optional[str]) -> bool:
        return self.decode(token) is not None

    def decode(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Return the verified payload, or ``None`` for any kind of invalid token."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.debug("token_rejected", reason="structure")
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("token_rejected", reason="header")
            return None
        # Pin the algorithm to rule out alg-confusion tokens
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.debug("token_rejected", reason="algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            logger.debug("token_rejected", reason="signature")
            return None

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.debug("token_rejected", reason="payload")
            return None
        if not isinstance(payload, dict):
            logger.debug("token_rejected", reason="payload")
            return None

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            logger.debug("token_rejected", reason="expiry_missing")
            return None
        if self._clock() >= exp:
            logger.debug("token_rejected", reason="expired")
            return None
        return payload

    def token_kind(self, token: Optional[str]) -> Optional[TokenKind]:
        payload = self.decode(token)
        if payload is None:
            return None
        try:
            return TokenKind(payload.get("sub"))
        except ValueError:
            return None

    def extract_claims(self, token: Optional[str]) -> Optional[IdentityClaim]:
        """Identity carried by a valid access token.

        The numeric account id wins when present; otherwise both email and a
        known provider are required.
        """
        payload = self.decode(token)
        if payload is None or payload.get("sub") != TokenKind.ACCESS.value:
            return None
        account_id = payload.get(CLAIM_ACCOUNT_ID)
        if isinstance(account_id, int) and not isinstance(account_id, bool):
            return LocalIdentity(account_id=account_id)
        email = payload.get(CLAIM_EMAIL)
        provider = payload.get(CLAIM_PROVIDER)
        if not isinstance(email, str) or not email or not isinstance(provider, str):
            return None
        try:
            return SocialIdentity(email=email, provider=Provider(provider))
        except ValueError:
            logger.debug("token_claims_unknown_provider", provider=provider)
            return None

    # encoding helpers
    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha512).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)
