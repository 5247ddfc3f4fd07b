from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from casedesk.config import Settings
from casedesk.logging import get_logger
from casedesk.service.errors import InvalidTokenError, TokenExpiredError
from casedesk.storage.models import Account, utcnow

logger = get_logger(__name__)

_IDENTITY_CLAIMS = ("user_id", "email", "role")


@dataclass
class TokenCheck:
    claims: dict[str, Any]
    renewed_token: Optional[str] = None


def _timestamp(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


class SessionTokenService:
    """Stateless HS256 session tokens with sliding renewal.

    A token carries ``user_id``, ``email`` and ``role`` plus ``iss``, ``iat``
    and ``exp``. Nothing is persisted; revocation happens by the guard
    re-reading the account on every request.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.settings = settings
        self.ttl = timedelta(days=settings.token_ttl_days)
        self.refresh_threshold = timedelta(days=settings.token_refresh_threshold_days)
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _sign_claims(self, identity: dict[str, Any]) -> str:
        now = self._clock()
        payload = {
            **{key: identity[key] for key in _IDENTITY_CLAIMS},
            "iss": self.settings.jwt_issuer,
            "iat": _timestamp(now),
            "exp": _timestamp(now + self.ttl),
        }
        return self._encode_jwt(payload)

    def issue(self, account: Account) -> str:
        return self._sign_claims(
            {"user_id": account.id, "email": account.email, "role": account.role}
        )

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid token.

        Raises TokenExpiredError for an authentic token past ``exp`` and
        InvalidTokenError for anything malformed, tampered or foreign.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError()

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        # Reject alg=none and friends before touching the signature
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # Headers arrive latin-1 decoded; compare bytes so non-ASCII input is just a mismatch
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
        ):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()
        if any(not payload.get(key) for key in _IDENTITY_CLAIMS):
            raise InvalidTokenError()
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError()
        if exp_ts <= _timestamp(self._clock()):
            raise TokenExpiredError()
        return payload

    def verify_and_maybe_refresh(self, token: str) -> TokenCheck:
        claims = self.verify(token)
        remaining = float(claims["exp"]) - _timestamp(self._clock())
        if remaining >= self.refresh_threshold.total_seconds():
            return TokenCheck(claims=claims)
        try:
            renewed = self._sign_claims(claims)
        except Exception as exc:
            # Renewal is best-effort; the current token is still valid
            logger.warning("token_renewal_failed", error=str(exc))
            return TokenCheck(claims=claims)
        logger.info("token_renewed", user_id=claims["user_id"])
        return TokenCheck(claims=claims, renewed_token=renewed)
