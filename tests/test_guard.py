"""Tests for request authentication and role checks."""

from datetime import datetime, timedelta

import pytest

from casedesk.config import Settings
from casedesk.service.errors import (
    AccountMissingError,
    ForbiddenError,
    InvalidTokenError,
    MissingTokenError,
    TokenExpiredError,
)
from casedesk.service.guard import AuthContext, AuthGuard
from casedesk.service.tokens import SessionTokenService
from casedesk.storage.memory import MemoryStore
from casedesk.storage.models import Account

T0 = datetime(2024, 6, 1, 8, 0, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="guard-test-secret", service_api_key="svc-key", cron_secret="cron-key"
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tokens(settings, clock):
    return SessionTokenService(settings, clock=clock)


@pytest.fixture
def guard(store, tokens, settings):
    return AuthGuard(store, tokens, settings)


async def _account(store, email="ravi@example.com", role="officer"):
    return await store.insert_account(
        Account.new(name="Ravi", rank="inspector", email=email, password_hash="h", role=role)
    )


def _ctx(account):
    return AuthContext(account=account, role=account.role)


class TestAuthenticate:
    async def test_missing_header(self, guard):
        with pytest.raises(MissingTokenError) as excinfo:
            await guard.authenticate(None)
        assert excinfo.value.reason == "missing_token"

    async def test_non_bearer_scheme_is_missing(self, guard):
        with pytest.raises(MissingTokenError):
            await guard.authenticate("Basic cmF2aTpwYXNz")

    async def test_valid_token(self, guard, store, tokens):
        account = await _account(store)
        ctx = await guard.authenticate(f"Bearer {tokens.issue(account)}")
        assert ctx.account_id == account.id
        assert ctx.role == "officer"
        assert ctx.renewed_token is None

    async def test_scheme_is_case_insensitive(self, guard, store, tokens):
        account = await _account(store)
        ctx = await guard.authenticate(f"bearer {tokens.issue(account)}")
        assert ctx.account_id == account.id

    async def test_role_is_read_from_store(self, guard, store, tokens):
        account = await _account(store)
        token = tokens.issue(account)
        await store.update_account(account.id, role="admin")
        ctx = await guard.authenticate(f"Bearer {token}")
        assert ctx.role == "admin"

    async def test_invalid_token(self, guard):
        with pytest.raises(InvalidTokenError):
            await guard.authenticate("Bearer not.a.token")

    async def test_non_ascii_signature_is_invalid(self, guard, store, tokens):
        token = tokens.issue(await _account(store))
        with pytest.raises(InvalidTokenError):
            await guard.authenticate(f"Bearer {token[:-1]}\u00e9")

    async def test_expired_token(self, guard, store, tokens, clock):
        account = await _account(store)
        token = tokens.issue(account)
        clock.now = T0 + timedelta(days=31)
        with pytest.raises(TokenExpiredError):
            await guard.authenticate(f"Bearer {token}")

    async def test_account_removed_after_issue(self, guard, store, tokens):
        account = await _account(store)
        token = tokens.issue(account)
        store.accounts.clear()
        with pytest.raises(AccountMissingError) as excinfo:
            await guard.authenticate(f"Bearer {token}")
        assert excinfo.value.reason == "account_missing"

    async def test_deactivated_account(self, guard, store, tokens):
        account = await _account(store)
        token = tokens.issue(account)
        await store.update_account(account.id, is_deleted=True)
        with pytest.raises(ForbiddenError) as excinfo:
            await guard.authenticate(f"Bearer {token}")
        assert excinfo.value.reason == "account_deactivated"

    async def test_renewed_token_is_surfaced(self, guard, store, tokens, clock):
        account = await _account(store)
        token = tokens.issue(account)
        clock.now = T0 + timedelta(days=28)
        ctx = await guard.authenticate(f"Bearer {token}")
        assert ctx.renewed_token
        assert ctx.renewed_token != token


class TestRoles:
    async def test_officer_denied_admin(self, guard, store):
        ctx = _ctx(await _account(store))
        with pytest.raises(ForbiddenError) as excinfo:
            guard.require_role(ctx, "admin")
        assert excinfo.value.reason == "role_required"

    async def test_admin_allowed_everywhere(self, guard, store):
        ctx = _ctx(await _account(store, role="admin"))
        guard.require_role(ctx, "admin")
        guard.require_role(ctx, "officer")

    async def test_self_target_forbidden(self, guard, store):
        account = await _account(store, role="admin")
        with pytest.raises(ForbiddenError) as excinfo:
            guard.ensure_not_self(_ctx(account), account.id)
        assert excinfo.value.reason == "self_modification"
        guard.ensure_not_self(_ctx(account), "someone-else")


class TestSharedSecrets:
    def test_service_key(self, guard):
        guard.require_service_key("svc-key")
        for bad in (None, "", "wrong", "svc-k\u00e9y"):
            with pytest.raises(ForbiddenError):
                guard.require_service_key(bad)

    def test_service_key_not_configured(self, store, tokens):
        guard = AuthGuard(store, tokens, Settings(jwt_secret="x"))
        guard.require_service_key(None)

    def test_cron_secret(self, guard):
        guard.require_cron_secret("Bearer cron-key")
        with pytest.raises(ForbiddenError):
            guard.require_cron_secret("Bearer nope")
        with pytest.raises(ForbiddenError):
            guard.require_cron_secret("Bearer cr\u00f6n-key")
        with pytest.raises(ForbiddenError):
            guard.require_cron_secret(None)

    def test_cron_secret_not_configured_always_denies(self, store, tokens):
        guard = AuthGuard(store, tokens, Settings(jwt_secret="x"))
        with pytest.raises(ForbiddenError):
            guard.require_cron_secret("Bearer anything")
