from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for storage-layer failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(StoreError):
    """The backing store could not be reached or the operation timed out."""


class RecordNotFound(StoreError):
    """A single-row operation matched zero rows."""


class ConstraintViolation(StoreError):
    """Raised when a storage-layer constraint rejects a write.

    ``constraint`` is the store's constraint name (e.g. ``accounts_email_key``)
    and ``field`` the column it guards, when known.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message, detail)
        self.constraint = constraint
        self.field = field


class UniqueViolation(ConstraintViolation):
    pass


class CheckViolation(ConstraintViolation):
    pass


class ForeignKeyViolation(ConstraintViolation):
    pass


__all__ = [
    "StoreError",
    "StoreUnavailable",
    "RecordNotFound",
    "ConstraintViolation",
    "UniqueViolation",
    "CheckViolation",
    "ForeignKeyViolation",
]
