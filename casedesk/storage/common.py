"""Common storage utilities shared between memory and postgres implementations.

Both backends name their constraints identically so that callers can map a
violation to the offending field without knowing which backend raised it.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from casedesk.storage.errors import CheckViolation
from casedesk.storage.models import (
    NAME_MAX_LENGTH,
    NAME_MIN_LENGTH,
    OTP_PURPOSES,
    RANKS,
    ROLES,
    Account,
    OneTimeCode,
    PendingAccount,
)

# constraint name -> column it guards
CONSTRAINT_FIELDS = {
    "accounts_email_key": "email",
    "accounts_name_check": "name",
    "accounts_rank_check": "rank",
    "accounts_role_check": "role",
    "pending_accounts_email_key": "email",
    "pending_accounts_name_check": "name",
    "pending_accounts_rank_check": "rank",
    "one_time_codes_purpose_check": "purpose",
}


def field_for_constraint(constraint: Optional[str]) -> Optional[str]:
    if not constraint:
        return None
    return CONSTRAINT_FIELDS.get(constraint)


def check_identity_fields(
    table: str, *, name: Optional[str] = None, rank: Optional[str] = None, role: Optional[str] = None
) -> None:
    """Apply the CHECK constraints the Postgres schema declares.

    Raises CheckViolation naming the first failing constraint.
    """
    if name is not None and not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        _violate(f"{table}_name_check")
    if rank is not None and rank not in RANKS:
        _violate(f"{table}_rank_check")
    if role is not None and role not in ROLES:
        _violate(f"{table}_role_check")


def check_code_fields(purpose: str) -> None:
    if purpose not in OTP_PURPOSES:
        _violate("one_time_codes_purpose_check")


def _violate(constraint: str) -> None:
    raise CheckViolation(
        f"check constraint {constraint} violated",
        constraint=constraint,
        field=field_for_constraint(constraint),
    )


class CredentialStore(Protocol):
    """Async operations the identity services need from a backing store."""

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> bool: ...

    async def get_account(self, account_id: str) -> Optional[Account]: ...

    async def get_account_by_email(self, email: str) -> Optional[Account]: ...

    async def insert_account(self, account: Account) -> Account: ...

    async def update_account(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        rank: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: Optional[str] = None,
        is_deleted: Optional[bool] = None,
    ) -> Account: ...

    async def list_accounts(self, *, include_deleted: bool = False, limit: int = 100) -> List[Account]: ...

    async def get_pending(self, pending_id: str) -> Optional[PendingAccount]: ...

    async def get_pending_by_email(self, email: str) -> Optional[PendingAccount]: ...

    async def insert_pending(self, pending: PendingAccount) -> PendingAccount: ...

    async def delete_pending(self, pending_id: str) -> bool: ...

    async def list_pending(self, *, limit: int = 100) -> List[PendingAccount]: ...

    async def upsert_code(self, code: OneTimeCode) -> OneTimeCode: ...

    async def get_code(self, email: str) -> Optional[OneTimeCode]: ...

    async def delete_code(self, email: str) -> bool: ...

    async def purge_expired_codes(self, now: datetime) -> int: ...
