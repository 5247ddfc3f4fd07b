"""Unit tests for the one-time code engine.

Covers:
- Issue preconditions per purpose (signup, signin, reset-password)
- Code shape and replacement of an outstanding code
- Validation order: missing, wrong code, wrong purpose, expired
- Single use and expiry cleanup
"""

from datetime import datetime, timedelta

import pytest

from casedesk.config import Settings
from casedesk.service import email as email_module
from casedesk.service.email import EmailService, render_otp_email
from casedesk.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    OtpExpiredError,
    OtpMismatchError,
    OtpNotFoundError,
    OtpWrongPurposeError,
    ServerError,
    ValidationError,
)
from casedesk.service.otp import OtpEngine
from casedesk.storage.memory import MemoryStore
from casedesk.storage.models import Account, OneTimeCode, PendingAccount

from conftest import RecordingMailer

T0 = datetime(2024, 3, 1, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store, mailer, clock):
    settings = Settings(jwt_secret="otp-test-secret", otp_ttl_minutes=5, otp_digits=4)
    return OtpEngine(store, mailer, settings, clock=clock)


async def _add_account(store, email="officer@example.com", **overrides):
    account = Account.new(
        name=overrides.pop("name", "Ravi"),
        rank=overrides.pop("rank", "inspector"),
        email=email,
        password_hash="not-a-real-hash",
    )
    for key, value in overrides.items():
        setattr(account, key, value)
    return await store.insert_account(account)


class TestIssue:
    async def test_signup_code_is_stored_and_mailed(self, engine, store, mailer):
        issued = await engine.issue("New.Officer@Example.com", "signup", "Meera")

        assert issued.email == "new.officer@example.com"
        assert issued.purpose == "signup"
        assert issued.expires_at == T0 + timedelta(minutes=5)

        record = store.codes["new.officer@example.com"]
        assert len(record.code) == 4
        assert record.code.isdigit()
        assert record.purpose == "signup"

        assert len(mailer.sent) == 1
        assert mailer.sent[0]["to"] == "new.officer@example.com"
        assert record.code in mailer.sent[0]["text"]
        assert "Meera" in mailer.sent[0]["text"]

    async def test_signup_requires_name(self, engine, store):
        with pytest.raises(ValidationError) as excinfo:
            await engine.issue("new@example.com", "signup", "  ")
        assert "name" in excinfo.value.detail
        assert store.codes == {}

    async def test_unknown_purpose_rejected(self, engine):
        with pytest.raises(ValidationError) as excinfo:
            await engine.issue("new@example.com", "login", None)
        assert "purpose" in excinfo.value.detail

    async def test_signup_for_existing_account_conflicts(self, engine, store):
        await _add_account(store, "taken@example.com")
        with pytest.raises(ConflictError):
            await engine.issue("taken@example.com", "signup", "Ravi")

    async def test_signin_for_unknown_email_not_found(self, engine, store, mailer):
        with pytest.raises(NotFoundError):
            await engine.issue("ghost@example.com", "signin")
        assert store.codes == {}
        assert mailer.sent == []

    async def test_reset_for_deactivated_account_not_found(self, engine, store):
        await _add_account(store, "gone@example.com", is_deleted=True)
        with pytest.raises(NotFoundError):
            await engine.issue("gone@example.com", "reset-password")

    async def test_pending_registration_blocks_any_purpose(self, engine, store):
        await store.insert_pending(
            PendingAccount.new(
                name="Meera", rank="constable", email="wait@example.com", password_hash="h"
            )
        )
        for purpose in ("signup", "signin", "reset-password"):
            with pytest.raises(ForbiddenError) as excinfo:
                await engine.issue("wait@example.com", purpose, "Meera")
            assert excinfo.value.reason == "awaiting_approval"

    async def test_signin_uses_account_name_in_mail(self, engine, store, mailer):
        await _add_account(store, "ravi@example.com", name="Ravi")
        await engine.issue("ravi@example.com", "signin", "Someone Else")
        assert "Hello Ravi," in mailer.sent[0]["text"]

    async def test_reissue_replaces_outstanding_code(self, engine, store, clock):
        await _add_account(store, "ravi@example.com")
        await engine.issue("ravi@example.com", "signin")
        clock.advance(minutes=2)
        await engine.issue("ravi@example.com", "reset-password")

        assert len(store.codes) == 1
        record = store.codes["ravi@example.com"]
        assert record.purpose == "reset-password"
        assert record.expires_at == T0 + timedelta(minutes=7)

    async def test_mail_failure_reports_server_error_and_keeps_code(self, store, clock):
        settings = Settings(jwt_secret="otp-test-secret")
        engine = OtpEngine(store, RecordingMailer(fail=True), settings, clock=clock)
        with pytest.raises(ServerError) as excinfo:
            await engine.issue("new@example.com", "signup", "Meera")
        assert excinfo.value.reason == "mail_send_failed"
        assert "new@example.com" in store.codes

    async def test_code_length_follows_settings(self, store, mailer, clock):
        settings = Settings(jwt_secret="otp-test-secret", otp_digits=6)
        engine = OtpEngine(store, mailer, settings, clock=clock)
        await engine.issue("new@example.com", "signup", "Meera")
        assert len(store.codes["new@example.com"].code) == 6


class TestValidate:
    async def _seed(self, store, code="1234", purpose="signin", minutes=5):
        await store.upsert_code(
            OneTimeCode.new("ravi@example.com", code, purpose, minutes, now=T0)
        )

    async def test_missing_code(self, engine):
        with pytest.raises(OtpNotFoundError) as excinfo:
            await engine.validate("ravi@example.com", "1234", "signin")
        assert excinfo.value.status_code == 404
        assert excinfo.value.reason == "otp_not_found"

    async def test_wrong_code_keeps_record(self, engine, store):
        await self._seed(store)
        with pytest.raises(OtpMismatchError) as excinfo:
            await engine.validate("ravi@example.com", "9999", "signin")
        assert excinfo.value.status_code == 400
        assert "ravi@example.com" in store.codes

    async def test_mismatch_is_reported_before_purpose(self, engine, store):
        await self._seed(store, purpose="signup")
        with pytest.raises(OtpMismatchError):
            await engine.validate("ravi@example.com", "0000", "signin")

    async def test_wrong_purpose_keeps_record(self, engine, store):
        await self._seed(store, purpose="signup")
        with pytest.raises(OtpWrongPurposeError) as excinfo:
            await engine.validate("ravi@example.com", "1234", "signin")
        assert excinfo.value.reason == "otp_wrong_purpose"
        assert "ravi@example.com" in store.codes

    async def test_expired_code_is_deleted(self, engine, store, clock):
        await self._seed(store)
        clock.advance(minutes=5, seconds=1)
        with pytest.raises(OtpExpiredError) as excinfo:
            await engine.validate("ravi@example.com", "1234", "signin")
        assert excinfo.value.reason == "otp_expired"
        assert store.codes == {}

    async def test_code_valid_at_exact_expiry(self, engine, store, clock):
        await self._seed(store)
        clock.advance(minutes=5)
        await engine.validate("ravi@example.com", "1234", "signin")

    async def test_success_consumes_code(self, engine, store):
        await self._seed(store)
        await engine.validate("Ravi@Example.com", "1234", "signin")
        assert store.codes == {}
        with pytest.raises(OtpNotFoundError):
            await engine.validate("ravi@example.com", "1234", "signin")


class TestPurge:
    async def test_purge_removes_only_expired(self, engine, store, clock):
        await store.upsert_code(OneTimeCode.new("a@example.com", "1111", "signin", 5, now=T0))
        await store.upsert_code(
            OneTimeCode.new("b@example.com", "2222", "signin", 5, now=T0 + timedelta(minutes=4))
        )
        clock.advance(minutes=6)
        assert await engine.purge_expired() == 1
        assert list(store.codes) == ["b@example.com"]


class _LogRecorder:
    def __init__(self):
        self.events = []

    def info(self, event, **kwargs):
        self.events.append((event, kwargs))

    warning = error = debug = info


async def test_unconfigured_mailer_does_not_log_the_code(monkeypatch):
    recorder = _LogRecorder()
    monkeypatch.setattr(email_module, "logger", recorder)
    subject, html_body, text_body = render_otp_email(
        name="Ravi", code="482913", purpose="signin", ttl_minutes=5
    )

    assert await EmailService().send("ravi@example.com", subject, html_body, text_body)
    assert [event for event, _ in recorder.events] == ["email_dev_mode"]
    assert "482913" not in repr(recorder.events)
    assert "ravi@example.com" not in repr(recorder.events)
