from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from casedesk.storage.models import Account, PendingAccount


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after stripping spoofing characters.

    Removes zero-width characters (U+200B-U+200D, U+FEFF) and bidi
    overrides (U+202A-U+202E, U+2066-U+2069).
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "unprocessable_entity",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-checkable error code")
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
    """API envelope format shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_CODE_PATTERN = re.compile(r"^[0-9]{4,10}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_code(value: str) -> str:
    value = (value or "").strip()
    if not _CODE_PATTERN.match(value):
        raise ValueError("code must be numeric")
    return value


def _normalize_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _normalize_unicode(value).strip()


def _normalize_rank(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return " ".join(value.strip().lower().split())


# Length rules for name and password are enforced by the identity service and
# the store so they surface as field-scoped 422s; these models only reject
# malformed or unknown input.
class StrictRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SendOtpRequest(StrictRequest):
    email: str
    purpose: str = Field(..., max_length=32)
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("purpose")
    @classmethod
    def _normalize_purpose(cls, value: str) -> str:
        # Accept "RESET PASSWORD" / "reset_password" spellings
        return re.sub(r"[\s_]+", "-", value.strip().lower())

    @field_validator("name")
    @classmethod
    def _normalize_otp_name(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_name(value)


class SignupRequest(StrictRequest):
    name: str = Field(..., max_length=128)
    rank: str = Field(..., max_length=64)
    email: str
    password: str = Field(..., max_length=128)
    code: str = Field(..., max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _validate_signup_code(cls, value: str) -> str:
        return _validate_code(value)

    @field_validator("name")
    @classmethod
    def _normalize_signup_name(cls, value: str) -> str:
        return _normalize_name(value)

    @field_validator("rank")
    @classmethod
    def _normalize_signup_rank(cls, value: str) -> str:
        return _normalize_rank(value)


class SigninRequest(StrictRequest):
    email: str
    password: str = Field(..., max_length=128)
    code: str = Field(..., max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _validate_signin_code(cls, value: str) -> str:
        return _validate_code(value)


class ResetPasswordRequest(StrictRequest):
    email: str
    code: str = Field(..., max_length=10)
    new_password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _validate_reset_code(cls, value: str) -> str:
        return _validate_code(value)


class UpdateProfileRequest(StrictRequest):
    name: Optional[str] = Field(default=None, max_length=128)
    rank: Optional[str] = Field(default=None, max_length=64)
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("name")
    @classmethod
    def _normalize_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_name(value)

    @field_validator("rank")
    @classmethod
    def _normalize_profile_rank(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_rank(value)

    @model_validator(mode="after")
    def _require_one_field(self):
        if self.name is None and self.rank is None and self.password is None:
            raise ValueError("provide at least one of name, rank or password")
        return self


class UpdateRoleRequest(StrictRequest):
    role: Literal["officer", "admin"]


class AccountResponse(BaseModel):
    id: str
    name: str
    rank: str
    email: str
    role: str
    verified: bool
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            name=account.name,
            rank=account.rank,
            email=account.email,
            role=account.role,
            verified=account.verified,
            is_deleted=account.is_deleted,
            deleted_at=account.deleted_at,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class PendingAccountResponse(BaseModel):
    id: str
    name: str
    rank: str
    email: str
    created_at: datetime
    status: str = "pending"

    @classmethod
    def from_pending(cls, pending: PendingAccount) -> "PendingAccountResponse":
        return cls(
            id=pending.id,
            name=pending.name,
            rank=pending.rank,
            email=pending.email,
            created_at=pending.created_at,
        )


class SigninResponse(BaseModel):
    user: AccountResponse
    token: str
    token_type: str = "bearer"


class OtpSentResponse(BaseModel):
    email: str
    purpose: str
    expires_at: datetime


class AccountListResponse(BaseModel):
    items: List[AccountResponse]


class PendingListResponse(BaseModel):
    items: List[PendingAccountResponse]


class ProfileResponse(BaseModel):
    message: str
    user: AccountResponse
