from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from laos.logging import get_logger
from laos.storage.errors import ConstraintViolation
from laos.storage.models import Account, Provider, Role

_ACCOUNT_COLUMNS = (
    "id, provider, local_id, password_hash, email, nickname, social_id, role, "
    "refresh_token, created_at"
)

_UNIQUE_CONSTRAINT_FIELDS = {
    "account_local_id_key": "local_id",
    "account_email_provider_key": "email_provider",
}


class PostgresStore:
    """Postgres-backed account directory."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_account_table()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_account_table(self) -> None:
        """Create the ``account`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id BIGSERIAL PRIMARY KEY,
                    provider TEXT NOT NULL DEFAULT 'LOCAL',
                    local_id TEXT,
                    password_hash TEXT,
                    email TEXT,
                    nickname TEXT,
                    social_id TEXT,
                    role TEXT NOT NULL DEFAULT 'USER',
                    refresh_token TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT account_local_id_key UNIQUE (local_id),
                    CONSTRAINT account_email_provider_key UNIQUE (email, provider)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS account_refresh_token_idx ON account (refresh_token)"
            )

    @staticmethod
    def _account_from_row(row: dict[str, Any]) -> Account:
        return Account(
            id=int(row["id"]),
            provider=Provider(row.get("provider") or Provider.LOCAL.value),
            local_id=row.get("local_id"),
            password_hash=row.get("password_hash"),
            email=row.get("email"),
            nickname=row.get("nickname"),
            social_id=row.get("social_id"),
            role=Role(row.get("role") or Role.USER.value),
            refresh_token=row.get("refresh_token"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        field = _UNIQUE_CONSTRAINT_FIELDS.get(constraint or "", "account")
        if field == "email_provider":
            return ConstraintViolation(field, "email already registered")
        return ConstraintViolation(field)

    def _fetch_one(self, sql: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        if not row:
            return None
        return self._account_from_row(row)

    # lookups
    def find_by_id(self, account_id: int) -> Optional[Account]:
        return self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE id = %s", (account_id,)
        )

    def find_by_local_id(self, local_id: str) -> Optional[Account]:
        return self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE local_id = %s", (local_id,)
        )

    def find_by_email_and_provider(
        self, email: str, provider: Provider
    ) -> Optional[Account]:
        return self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE email = %s AND provider = %s",
            (email, provider.value),
        )

    def find_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE email = %s ORDER BY id LIMIT 1",
            (email,),
        )

    def find_by_nickname(self, nickname: str) -> Optional[Account]:
        return self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE nickname = %s ORDER BY id LIMIT 1",
            (nickname,),
        )

    def find_by_refresh_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE refresh_token = %s", (token,)
        )

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account ORDER BY id LIMIT %s", (limit,)
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO account (provider, local_id, password_hash, email, nickname, social_id, role)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        provider.value,
                        local_id,
                        password_hash,
                        email,
                        nickname,
                        social_id,
                        role.value,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        account = self._account_from_row(row)
        self.logger.info("account_created", account_id=account.id, provider=provider.value)
        return account

    def save(self, account: Account) -> Optional[Account]:
        """Write profile fields back; the stored refresh token is left untouched."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE account
                    SET provider = %s, local_id = %s, password_hash = %s, email = %s,
                        nickname = %s, social_id = %s, role = %s
                    WHERE id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account.provider.value,
                        account.local_id,
                        account.password_hash,
                        account.email,
                        account.nickname,
                        account.social_id,
                        account.role.value,
                        account.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        if not row:
            return None
        return self._account_from_row(row)

    def set_refresh_token(self, account_id: int, token: Optional[str]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET refresh_token = %s WHERE id = %s", (token, account_id)
            )
            return result.rowcount > 0

    def swap_refresh_token(self, expected: str, new: str) -> Optional[Account]:
        """Compare-and-set on the stored refresh token.

        The row lock taken by UPDATE serializes concurrent swaps; a loser
        re-evaluates the WHERE clause against the winner's value and matches
        nothing.
        """
        if not expected:
            return None
        return self._fetch_one(
            f"UPDATE account SET refresh_token = %s WHERE refresh_token = %s "
            f"RETURNING {_ACCOUNT_COLUMNS}",
            (new, expected),
        )

    def delete_account(self, account_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return result.rowcount > 0
