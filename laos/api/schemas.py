from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from laos.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    # Matches the X-Request-ID response header inside a request
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_LOCAL_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_local_id(value: str) -> str:
    """Login id: ASCII letters, digits, ``_ . -``; at most 64 characters."""
    value = value.strip()
    if not value:
        raise ValueError("local id must not be blank")
    if len(value) > 64:
        raise ValueError("local id must be at most 64 characters")
    if not _LOCAL_ID_PATTERN.match(value):
        raise ValueError(
            "local id must contain only letters, digits, underscores, dots and hyphens"
        )
    return value


def _validate_nickname(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("nickname must not be blank")
    if len(normalized) > 30:
        raise ValueError("nickname must be at most 30 characters")
    return normalized


def _validate_password(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not value.strip():
        raise ValueError("password must not be blank")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    local_id: str = Field(..., max_length=64)
    password: str
    nickname: str
    email: Optional[str] = None
    email_code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("local_id")
    @classmethod
    def _check_local_id(cls, value: str) -> str:
        return _validate_local_id(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("nickname")
    @classmethod
    def _check_nickname(cls, value: str) -> str:
        return _validate_nickname(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)


class LoginRequest(BaseModel):
    local_id: str = Field(..., max_length=64)
    password: str = Field(..., max_length=128)


class GoogleCallbackRequest(BaseModel):
    code: str = Field(..., max_length=2048)


class EmailCodeRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class UpdateAccountRequest(BaseModel):
    nickname: Optional[str] = None
    password: Optional[str] = None

    @field_validator("nickname")
    @classmethod
    def _check_nickname(cls, value: Optional[str]) -> Optional[str]:
        return _validate_nickname(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password(value)

    @model_validator(mode="after")
    def _require_change(self):
        if self.nickname is None and self.password is None:
            raise ValueError("provide a nickname or a password to update")
        return self


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    account_id: int
    created: Optional[bool] = None


class AccountResponse(BaseModel):
    id: int
    username: str
    provider: str
    role: str
    local_id: Optional[str] = None
    email: Optional[str] = None
    nickname: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_account(cls, account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            provider=account.provider.value,
            role=account.role.value,
            local_id=account.local_id,
            email=account.email,
            nickname=account.nickname,
            created_at=account.created_at,
        )


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
