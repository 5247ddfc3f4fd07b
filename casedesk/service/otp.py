from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from casedesk.config import Settings
from casedesk.logging import get_logger
from casedesk.service.email import Mailer, redact_email, render_otp_email
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
from casedesk.storage.common import CredentialStore
from casedesk.storage.errors import StoreError
from casedesk.storage.models import (
    OTP_PURPOSES,
    OneTimeCode,
    OtpPurpose,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class OtpIssue:
    email: str
    purpose: str
    expires_at: datetime


class OtpEngine:
    """Issues and redeems one-time codes bound to an email and a purpose.

    At most one code is outstanding per email: issuing replaces the stored
    record. A code is consumed by the first successful ``validate`` and an
    expired code is deleted as soon as it is presented.
    """

    def __init__(
        self,
        store: CredentialStore,
        mailer: Mailer,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.ttl_minutes = settings.otp_ttl_minutes
        self.digits = settings.otp_digits
        self._clock = clock

    def _generate_code(self) -> str:
        return str(secrets.randbelow(10**self.digits)).zfill(self.digits)

    async def issue(
        self, email: str, purpose: str, display_name: Optional[str] = None
    ) -> OtpIssue:
        email = normalize_email(email)
        if purpose not in OTP_PURPOSES:
            raise ValidationError(
                "Invalid purpose.",
                detail={"purpose": f"Purpose must be one of {sorted(OTP_PURPOSES)}."},
            )
        display_name = (display_name or "").strip() or None
        if purpose == OtpPurpose.SIGNUP.value and not display_name:
            raise ValidationError(
                "Name is required for signup.", detail={"name": "Name is required for signup."}
            )

        try:
            pending = await self.store.get_pending_by_email(email)
            account = await self.store.get_account_by_email(email)
        except StoreError as exc:
            logger.error("otp_issue_lookup_failed", error=str(exc))
            raise ServerError("Unable to issue a code right now.") from exc

        if pending:
            raise ForbiddenError(
                "Your registration is awaiting admin approval.",
                detail={"reason": "awaiting_approval"},
            )
        if purpose == OtpPurpose.SIGNUP.value:
            if account:
                raise ConflictError(
                    "User already exists. Please log in instead.",
                    detail={"email": "An account with this email already exists."},
                )
        elif not account or account.is_deleted:
            raise NotFoundError(
                "User not found. Please sign up first.",
                detail={"email": "No account is registered with this email."},
            )
        else:
            display_name = account.name

        now = self._clock()
        record = OneTimeCode.new(
            email, self._generate_code(), purpose, self.ttl_minutes, now=now
        )
        try:
            await self.store.upsert_code(record)
        except StoreError as exc:
            logger.error("otp_persist_failed", purpose=purpose, error=str(exc))
            raise ServerError("Unable to issue a code right now.") from exc

        subject, html_body, text_body = render_otp_email(
            name=display_name, code=record.code, purpose=purpose, ttl_minutes=self.ttl_minutes
        )
        sent = await self.mailer.send(email, subject, html_body, text_body)
        if not sent:
            # The stored code stays valid; the client may request a resend
            logger.error("otp_send_failed", to=redact_email(email), purpose=purpose)
            raise ServerError(
                "Failed to send the verification email. Please request a new code.",
                detail={"reason": "mail_send_failed"},
            )

        logger.info("otp_issued", to=redact_email(email), purpose=purpose)
        return OtpIssue(email=email, purpose=purpose, expires_at=record.expires_at)

    async def validate(self, email: str, code: str, expected_purpose: str) -> None:
        """Redeem ``code`` for ``expected_purpose`` or raise an ``OtpError``.

        Checks run in a fixed order: missing record, wrong code, wrong
        purpose, expiry. Only a fully successful check consumes the code.
        """
        email = normalize_email(email)
        try:
            record = await self.store.get_code(email)
        except StoreError as exc:
            logger.error("otp_lookup_failed", error=str(exc))
            raise ServerError("Unable to verify the code right now.") from exc
        if record is None:
            raise OtpNotFoundError()
        if not hmac.compare_digest(record.code.encode(), str(code).encode()):
            raise OtpMismatchError()
        if record.purpose != expected_purpose:
            raise OtpWrongPurposeError()
        if record.is_expired(self._clock()):
            await self.store.delete_code(email)
            logger.info("otp_expired", to=redact_email(email), purpose=record.purpose)
            raise OtpExpiredError()
        if not await self.store.delete_code(email):
            # Consumed by a concurrent request between lookup and delete
            raise OtpNotFoundError()
        logger.info("otp_redeemed", to=redact_email(email), purpose=expected_purpose)

    async def purge_expired(self) -> int:
        return await self.store.purge_expired_codes(self._clock())
