from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from laos.logging import get_logger
from laos.storage.errors import ConstraintViolation
from laos.storage.models import Account, Provider, Role


class MemoryStore:
    """In-memory account directory with JSON snapshots under ``fs_root``.

    Every read and write happens under one ``RLock`` so the refresh-token
    compare-and-set is atomic with respect to all other account writes.
    Callers always receive copies; mutating a returned ``Account`` has no
    effect until it is passed back through :meth:`save`.
    """

    def __init__(self, fs_root: str = "/tmp/laos") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self._id_seq: int = 1
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    # lookups
    def find_by_id(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def find_by_local_id(self, local_id: str) -> Optional[Account]:
        return self._find_first(lambda a: a.local_id is not None and a.local_id == local_id)

    def find_by_email_and_provider(
        self, email: str, provider: Provider
    ) -> Optional[Account]:
        return self._find_first(lambda a: a.email == email and a.provider == provider)

    def find_by_email(self, email: str) -> Optional[Account]:
        return self._find_first(lambda a: a.email is not None and a.email == email)

    def find_by_nickname(self, nickname: str) -> Optional[Account]:
        return self._find_first(lambda a: a.nickname is not None and a.nickname == nickname)

    def find_by_refresh_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._find_first(lambda a: a.refresh_token == token)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.id)
            return [replace(a) for a in ordered[:limit]]

    def _find_first(self, predicate) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if predicate(account):
                    return replace(account)
            return None

    # writes
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
        with self._data_lock:
            account = Account(
                id=self._id_seq,
                provider=provider,
                local_id=local_id,
                password_hash=password_hash,
                email=email,
                nickname=nickname,
                social_id=social_id,
                role=role,
            )
            self._check_unique(account)
            self._id_seq += 1
            self.accounts[account.id] = account
            self._persist_state()
            self.logger.info("account_created", account_id=account.id, provider=provider.value)
            return replace(account)

    def save(self, account: Account) -> Optional[Account]:
        """Write profile fields back; the stored refresh token is left untouched."""
        with self._data_lock:
            current = self.accounts.get(account.id)
            if not current:
                return None
            self._check_unique(account)
            updated = replace(account, refresh_token=current.refresh_token)
            self.accounts[account.id] = updated
            self._persist_state()
            return replace(updated)

    def set_refresh_token(self, account_id: int, token: Optional[str]) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.refresh_token = token
            self._persist_state()
            return True

    def swap_refresh_token(self, expected: str, new: str) -> Optional[Account]:
        """Replace ``expected`` with ``new`` on whichever account holds it.

        Returns the updated account, or ``None`` when no account currently
        stores ``expected`` (already rotated, logged out, or never issued).
        """
        if not expected:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if account.refresh_token == expected:
                    account.refresh_token = new
                    self._persist_state()
                    return replace(account)
            return None

    def delete_account(self, account_id: int) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self._persist_state()
            return True

    def _check_unique(self, candidate: Account) -> None:
        for other in self.accounts.values():
            if other.id == candidate.id:
                continue
            if candidate.local_id and other.local_id == candidate.local_id:
                raise ConstraintViolation("local_id")
            if (
                candidate.email
                and other.email == candidate.email
                and other.provider == candidate.provider
            ):
                raise ConstraintViolation("email_provider", "email already registered")

    # persistence
    def _persist_state(self) -> None:
        state = {
            "next_id": self._id_seq,
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            int(a["id"]): self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._id_seq = max(
            int(data.get("next_id", 1)), max(self.accounts, default=0) + 1
        )
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    @staticmethod
    def _serialize_account(account: Account) -> dict:
        return {
            "id": account.id,
            "provider": account.provider.value,
            "local_id": account.local_id,
            "password_hash": account.password_hash,
            "email": account.email,
            "nickname": account.nickname,
            "social_id": account.social_id,
            "role": account.role.value,
            "refresh_token": account.refresh_token,
            "created_at": account.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        return Account(
            id=int(data["id"]),
            provider=Provider(data.get("provider", Provider.LOCAL.value)),
            local_id=data.get("local_id"),
            password_hash=data.get("password_hash"),
            email=data.get("email"),
            nickname=data.get("nickname"),
            social_id=data.get("social_id"),
            role=Role(data.get("role", Role.USER.value)),
            refresh_token=data.get("refresh_token"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
