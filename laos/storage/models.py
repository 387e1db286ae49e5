from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Provider(str, Enum):
    """Where an account's identity comes from."""

    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


@dataclass
class Account:
    id: int
    provider: Provider = Provider.LOCAL
    local_id: Optional[str] = None
    password_hash: Optional[str] = None
    email: Optional[str] = None
    nickname: Optional[str] = None
    social_id: Optional[str] = None
    role: Role = Role.USER
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_local(self) -> bool:
        return self.provider == Provider.LOCAL

    @property
    def username(self) -> str:
        """Email when the account has one, otherwise the local login id."""
        return self.email or self.local_id or ""
