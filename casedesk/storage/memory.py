from __future__ import annotations

import asyncio
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from casedesk.logging import get_logger
from casedesk.storage.common import check_code_fields, check_identity_fields
from casedesk.storage.errors import RecordNotFound, UniqueViolation
from casedesk.storage.models import Account, OneTimeCode, PendingAccount, utcnow


class MemoryStore:
    """In-memory backing store for tests and local development.

    Enforces the same unique and check constraints as the Postgres schema.
    Every operation yields to the event loop once before touching state, so
    concurrent requests interleave between calls the way they would against
    a remote store; each operation itself is atomic under ``_data_lock``.
    Records are copied on the way in and out so callers never share state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.pending: Dict[str, PendingAccount] = {}
        self.codes: Dict[str, OneTimeCode] = {}
        # RLock allows nested acquisitions from the same thread
        self._data_lock = threading.RLock()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def _round_trip(self) -> None:
        await asyncio.sleep(0)

    # accounts
    async def get_account(self, account_id: str) -> Optional[Account]:
        await self._round_trip()
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        await self._round_trip()
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return replace(account) if account else None

    async def insert_account(self, account: Account) -> Account:
        await self._round_trip()
        with self._data_lock:
            check_identity_fields(
                "accounts", name=account.name, rank=account.rank, role=account.role
            )
            if any(existing.email == account.email for existing in self.accounts.values()):
                raise UniqueViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint="accounts_email_key",
                    field="email",
                )
            self.accounts[account.id] = replace(account)
            return replace(account)

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
        await self._round_trip()
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise RecordNotFound("account not found", {"account_id": account_id})
            check_identity_fields("accounts", name=name, rank=rank, role=role)
            updated = replace(account, updated_at=utcnow())
            if name is not None:
                updated.name = name
            if rank is not None:
                updated.rank = rank
            if password_hash is not None:
                updated.password_hash = password_hash
            if role is not None:
                updated.role = role
            if is_deleted is not None:
                updated.is_deleted = is_deleted
                updated.deleted_at = updated.updated_at if is_deleted else None
            self.accounts[account_id] = updated
            return replace(updated)

    async def list_accounts(
        self, *, include_deleted: bool = False, limit: int = 100
    ) -> List[Account]:
        await self._round_trip()
        with self._data_lock:
            results = [
                replace(a)
                for a in self.accounts.values()
                if include_deleted or not a.is_deleted
            ]
            return sorted(results, key=lambda a: a.created_at, reverse=True)[:limit]

    # pending signups
    async def get_pending(self, pending_id: str) -> Optional[PendingAccount]:
        await self._round_trip()
        with self._data_lock:
            pending = self.pending.get(pending_id)
            return replace(pending) if pending else None

    async def get_pending_by_email(self, email: str) -> Optional[PendingAccount]:
        await self._round_trip()
        with self._data_lock:
            pending = next((p for p in self.pending.values() if p.email == email), None)
            return replace(pending) if pending else None

    async def insert_pending(self, pending: PendingAccount) -> PendingAccount:
        await self._round_trip()
        with self._data_lock:
            check_identity_fields("pending_accounts", name=pending.name, rank=pending.rank)
            if any(existing.email == pending.email for existing in self.pending.values()):
                raise UniqueViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint="pending_accounts_email_key",
                    field="email",
                )
            self.pending[pending.id] = replace(pending)
            return replace(pending)

    async def delete_pending(self, pending_id: str) -> bool:
        await self._round_trip()
        with self._data_lock:
            return self.pending.pop(pending_id, None) is not None

    async def list_pending(self, *, limit: int = 100) -> List[PendingAccount]:
        await self._round_trip()
        with self._data_lock:
            results = [replace(p) for p in self.pending.values()]
            return sorted(results, key=lambda p: p.created_at)[:limit]

    # one-time codes
    async def upsert_code(self, code: OneTimeCode) -> OneTimeCode:
        await self._round_trip()
        with self._data_lock:
            check_code_fields(code.purpose)
            self.codes[code.email] = replace(code)
            return replace(code)

    async def get_code(self, email: str) -> Optional[OneTimeCode]:
        await self._round_trip()
        with self._data_lock:
            code = self.codes.get(email)
            return replace(code) if code else None

    async def delete_code(self, email: str) -> bool:
        await self._round_trip()
        with self._data_lock:
            return self.codes.pop(email, None) is not None

    async def purge_expired_codes(self, now: datetime) -> int:
        await self._round_trip()
        with self._data_lock:
            expired = [email for email, code in self.codes.items() if code.is_expired(now)]
            for email in expired:
                self.codes.pop(email, None)
            if expired:
                self.logger.info("otp_codes_purged", count=len(expired))
            return len(expired)
