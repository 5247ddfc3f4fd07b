from datetime import datetime

import pytest
from psycopg import errors

from casedesk.storage.errors import CheckViolation, ConstraintViolation, UniqueViolation
from casedesk.storage.postgres import (
    SCHEMA_STATEMENTS,
    PostgresStore,
    _row_to_account,
    _row_to_code,
    _row_to_pending,
    translate_integrity_error,
)


def test_unique_violation_maps_to_email_field():
    exc = translate_integrity_error(
        errors.UniqueViolation("duplicate key"), constraint="accounts_email_key"
    )
    assert isinstance(exc, UniqueViolation)
    assert exc.field == "email"
    assert exc.constraint == "accounts_email_key"


@pytest.mark.parametrize(
    "constraint, field",
    [
        ("accounts_name_check", "name"),
        ("pending_accounts_rank_check", "rank"),
        ("accounts_role_check", "role"),
        ("one_time_codes_purpose_check", "purpose"),
    ],
)
def test_check_violation_maps_to_field(constraint, field):
    exc = translate_integrity_error(errors.CheckViolation("check"), constraint=constraint)
    assert isinstance(exc, CheckViolation)
    assert exc.field == field


def test_unknown_constraint_keeps_field_empty():
    exc = translate_integrity_error(
        errors.NotNullViolation("null"), constraint="accounts_mystery"
    )
    assert type(exc) is ConstraintViolation
    assert exc.field is None


def test_schema_names_every_mapped_constraint():
    ddl = "\n".join(SCHEMA_STATEMENTS)
    for name in (
        "accounts_email_key",
        "accounts_name_check",
        "accounts_rank_check",
        "accounts_role_check",
        "pending_accounts_email_key",
        "one_time_codes_purpose_check",
    ):
        assert name in ddl


def test_row_mappers():
    now = datetime(2024, 2, 2, 10, 0)
    account = _row_to_account(
        {
            "id": "a1",
            "name": "Ravi",
            "rank": "inspector",
            "email": "ravi@example.com",
            "password_hash": "h",
            "role": "admin",
            "verified": True,
            "is_deleted": False,
            "deleted_at": None,
            "created_at": now,
            "updated_at": now,
        }
    )
    assert account.is_admin
    assert account.created_at == now

    pending = _row_to_pending(
        {
            "id": "p1",
            "email": "meera@example.com",
            "name": "Meera",
            "rank": "constable",
            "password_hash": "h",
            "created_at": now,
        }
    )
    assert pending.email == "meera@example.com"

    code = _row_to_code(
        {
            "email": "ravi@example.com",
            "code": "0042",
            "purpose": "signin",
            "expires_at": now,
            "created_at": now,
        }
    )
    assert code.code == "0042"
    assert code.is_expired(datetime(2024, 2, 2, 10, 1))


def test_store_construction_does_not_connect():
    store = PostgresStore("postgresql://localhost:1/never", pool_size=2)
    assert store.pool.closed
