from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from casedesk.logging import get_logger
from casedesk.storage.common import field_for_constraint
from casedesk.storage.errors import (
    CheckViolation,
    ConstraintViolation,
    ForeignKeyViolation,
    RecordNotFound,
    StoreUnavailable,
    UniqueViolation,
)
from casedesk.storage.models import (
    NAME_MAX_LENGTH,
    NAME_MIN_LENGTH,
    Account,
    OneTimeCode,
    PendingAccount,
    utcnow,
)

_RANK_LIST = "'constable', 'inspector', 'senior inspector', 'investigating officer'"

SCHEMA_STATEMENTS = [
    f"""
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        rank TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'officer',
        verified BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        deleted_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        CONSTRAINT accounts_email_key UNIQUE (email),
        CONSTRAINT accounts_name_check
            CHECK (char_length(name) BETWEEN {NAME_MIN_LENGTH} AND {NAME_MAX_LENGTH}),
        CONSTRAINT accounts_rank_check CHECK (rank IN ({_RANK_LIST})),
        CONSTRAINT accounts_role_check CHECK (role IN ('officer', 'admin'))
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS pending_accounts (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        rank TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        CONSTRAINT pending_accounts_email_key UNIQUE (email),
        CONSTRAINT pending_accounts_name_check
            CHECK (char_length(name) BETWEEN {NAME_MIN_LENGTH} AND {NAME_MAX_LENGTH}),
        CONSTRAINT pending_accounts_rank_check CHECK (rank IN ({_RANK_LIST}))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS one_time_codes (
        email TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        purpose TEXT NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        created_at TIMESTAMP NOT NULL,
        CONSTRAINT one_time_codes_purpose_check
            CHECK (purpose IN ('signup', 'signin', 'reset-password'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_codes_expires_at_idx ON one_time_codes (expires_at)",
]

_UPDATABLE_ACCOUNT_COLUMNS = ("name", "rank", "password_hash", "role", "is_deleted")


def translate_integrity_error(
    exc: errors.IntegrityError, constraint: Optional[str] = None
) -> ConstraintViolation:
    """Map a psycopg integrity error to the store's constraint exceptions."""

    constraint = constraint or exc.diag.constraint_name
    field = field_for_constraint(constraint)
    detail = {"field": field} if field else {}
    if isinstance(exc, errors.UniqueViolation):
        cls = UniqueViolation
    elif isinstance(exc, errors.CheckViolation):
        cls = CheckViolation
    elif isinstance(exc, errors.ForeignKeyViolation):
        cls = ForeignKeyViolation
    else:
        cls = ConstraintViolation
    return cls(
        f"constraint {constraint or 'unknown'} violated",
        detail,
        constraint=constraint,
        field=field,
    )


def _row_to_account(row: Dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        name=row["name"],
        rank=row["rank"],
        email=row["email"],
        password_hash=row["password_hash"],
        role=row.get("role", "officer"),
        verified=bool(row.get("verified", True)),
        is_deleted=bool(row.get("is_deleted", False)),
        deleted_at=row.get("deleted_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_pending(row: Dict[str, Any]) -> PendingAccount:
    return PendingAccount(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        rank=row["rank"],
        password_hash=row["password_hash"],
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_code(row: Dict[str, Any]) -> OneTimeCode:
    return OneTimeCode(
        email=row["email"],
        code=str(row["code"]),
        purpose=row["purpose"],
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed credential store on an async connection pool.

    Timestamps are stored as naive UTC, matching the in-memory models.
    """

    def __init__(self, dsn: str, *, pool_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=1,
            max_size=pool_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()
        await self._ensure_schema()

    async def close(self) -> None:
        await self.pool.close()

    @contextlib.asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except errors.IntegrityError as exc:
            raise translate_integrity_error(exc) from exc
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    async def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        async with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)

    async def ping(self) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
        return bool(row and row["ok"] == 1)

    # accounts
    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM accounts WHERE id = %s", (account_id,))
            row = await cur.fetchone()
        return _row_to_account(row) if row else None

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM accounts WHERE email = %s", (email,))
            row = await cur.fetchone()
        return _row_to_account(row) if row else None

    async def insert_account(self, account: Account) -> Account:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO accounts (id, name, rank, email, password_hash, role, verified,
                                      is_deleted, deleted_at, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    account.id,
                    account.name,
                    account.rank,
                    account.email,
                    account.password_hash,
                    account.role,
                    account.verified,
                    account.is_deleted,
                    account.deleted_at,
                    account.created_at,
                    account.updated_at,
                ),
            )
            row = await cur.fetchone()
        return _row_to_account(row)

    async def update_account(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        rank: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: Optional[str] = None,
        is_deleted: Optional[bool] = None,
    ) -> Account:
        values = {
            "name": name,
            "rank": rank,
            "password_hash": password_hash,
            "role": role,
            "is_deleted": is_deleted,
        }
        assignments: List[str] = []
        params: List[Any] = []
        for column in _UPDATABLE_ACCOUNT_COLUMNS:
            if values[column] is not None:
                assignments.append(f"{column} = %s")
                params.append(values[column])
        now = utcnow()
        if is_deleted is not None:
            assignments.append("deleted_at = %s")
            params.append(now if is_deleted else None)
        assignments.append("updated_at = %s")
        params.append(now)
        params.append(account_id)
        async with self._connect() as conn:
            cur = await conn.execute(
                f"UPDATE accounts SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            )
            row = await cur.fetchone()
        if not row:
            raise RecordNotFound("account not found", {"account_id": account_id})
        return _row_to_account(row)

    async def list_accounts(
        self, *, include_deleted: bool = False, limit: int = 100
    ) -> List[Account]:
        query = "SELECT * FROM accounts"
        if not include_deleted:
            query += " WHERE is_deleted = FALSE"
        query += " ORDER BY created_at DESC LIMIT %s"
        async with self._connect() as conn:
            cur = await conn.execute(query, (limit,))
            rows = await cur.fetchall()
        return [_row_to_account(row) for row in rows]

    # pending signups
    async def get_pending(self, pending_id: str) -> Optional[PendingAccount]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM pending_accounts WHERE id = %s", (pending_id,)
            )
            row = await cur.fetchone()
        return _row_to_pending(row) if row else None

    async def get_pending_by_email(self, email: str) -> Optional[PendingAccount]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM pending_accounts WHERE email = %s", (email,)
            )
            row = await cur.fetchone()
        return _row_to_pending(row) if row else None

    async def insert_pending(self, pending: PendingAccount) -> PendingAccount:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO pending_accounts (id, email, name, rank, password_hash, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    pending.id,
                    pending.email,
                    pending.name,
                    pending.rank,
                    pending.password_hash,
                    pending.created_at,
                ),
            )
            row = await cur.fetchone()
        return _row_to_pending(row)

    async def delete_pending(self, pending_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM pending_accounts WHERE id = %s", (pending_id,)
            )
        return cur.rowcount > 0

    async def list_pending(self, *, limit: int = 100) -> List[PendingAccount]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM pending_accounts ORDER BY created_at LIMIT %s", (limit,)
            )
            rows = await cur.fetchall()
        return [_row_to_pending(row) for row in rows]

    # one-time codes
    async def upsert_code(self, code: OneTimeCode) -> OneTimeCode:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO one_time_codes (email, code, purpose, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET code = EXCLUDED.code,
                    purpose = EXCLUDED.purpose,
                    expires_at = EXCLUDED.expires_at,
                    created_at = EXCLUDED.created_at
                RETURNING *
                """,
                (code.email, code.code, code.purpose, code.expires_at, code.created_at),
            )
            row = await cur.fetchone()
        return _row_to_code(row)

    async def get_code(self, email: str) -> Optional[OneTimeCode]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM one_time_codes WHERE email = %s", (email,)
            )
            row = await cur.fetchone()
        return _row_to_code(row) if row else None

    async def delete_code(self, email: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM one_time_codes WHERE email = %s", (email,)
            )
        return cur.rowcount > 0

    async def purge_expired_codes(self, now: datetime) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM one_time_codes WHERE expires_at < %s", (now,)
            )
        if cur.rowcount:
            self.logger.info("otp_codes_purged", count=cur.rowcount)
        return cur.rowcount
