from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class Rank(str, Enum):
    CONSTABLE = "constable"
    INSPECTOR = "inspector"
    SENIOR_INSPECTOR = "senior inspector"
    INVESTIGATING_OFFICER = "investigating officer"


class Role(str, Enum):
    OFFICER = "officer"
    ADMIN = "admin"


class OtpPurpose(str, Enum):
    SIGNUP = "signup"
    SIGNIN = "signin"
    RESET_PASSWORD = "reset-password"


RANKS = frozenset(r.value for r in Rank)
ROLES = frozenset(r.value for r in Role)
OTP_PURPOSES = frozenset(p.value for p in OtpPurpose)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 20


@dataclass
class Account:
    id: str
    name: str
    rank: str
    email: str
    password_hash: str
    role: str = Role.OFFICER.value
    verified: bool = True
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        name: str,
        rank: str,
        email: str,
        password_hash: str,
        role: str = Role.OFFICER.value,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            rank=rank,
            email=email,
            password_hash=password_hash,
            role=role,
            verified=True,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


@dataclass
class PendingAccount:
    id: str
    email: str
    name: str
    rank: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, *, name: str, rank: str, email: str, password_hash: str) -> "PendingAccount":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            rank=rank,
            password_hash=password_hash,
        )


@dataclass
class OneTimeCode:
    email: str
    code: str
    purpose: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, email: str, code: str, purpose: str, ttl_minutes: int, *, now: datetime
    ) -> "OneTimeCode":
        return cls(
            email=email,
            code=code,
            purpose=purpose,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at
