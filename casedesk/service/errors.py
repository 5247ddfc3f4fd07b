from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - unprocessable_entity (422)
    - rate_limited (429)
    - server_error (500)

    ``detail`` carries field-scoped messages (``{"password": "..."}``) and,
    where callers need to branch on it, a machine-readable ``reason``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def reason(self) -> Optional[str]:
        return self.detail.get("reason")


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or stale approval (409)."""
    status_code = 409
    error_code = "conflict"


class UnprocessableDataError(ServiceError):
    """Input passed request validation but the store rejected it (422)."""
    status_code = 422
    error_code = "unprocessable_entity"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class OtpError(ServiceError):
    """Base for one-time-code failures; ``reason`` tells them apart."""

    reason_code: str = "otp_invalid"

    def __init__(self, message: str) -> None:
        super().__init__(message, detail={"otp": message, "reason": self.reason_code})


class OtpNotFoundError(OtpError):
    status_code = 404
    error_code = "not_found"
    reason_code = "otp_not_found"

    def __init__(self) -> None:
        super().__init__("No OTP found. Please request a code.")


class OtpMismatchError(OtpError):
    reason_code = "otp_mismatch"

    def __init__(self) -> None:
        super().__init__("Invalid verification code.")


class OtpWrongPurposeError(OtpError):
    reason_code = "otp_wrong_purpose"

    def __init__(self) -> None:
        super().__init__("This code was issued for a different action.")


class OtpExpiredError(OtpError):
    reason_code = "otp_expired"

    def __init__(self) -> None:
        super().__init__("OTP has expired. Please request a new one.")


class TokenError(AuthenticationError):
    """Session token rejected; ``reason`` separates expiry from tampering."""

    reason_code: str = "invalid_token"

    def __init__(self, message: str) -> None:
        super().__init__(message, detail={"reason": self.reason_code})


class MissingTokenError(TokenError):
    reason_code = "missing_token"

    def __init__(self) -> None:
        super().__init__("Authorization token missing.")


class InvalidTokenError(TokenError):
    reason_code = "invalid_token"

    def __init__(self) -> None:
        super().__init__("Invalid token.")


class TokenExpiredError(TokenError):
    reason_code = "token_expired"

    def __init__(self) -> None:
        super().__init__("Token has expired. Please sign in again.")


class AccountMissingError(TokenError):
    reason_code = "account_missing"

    def __init__(self) -> None:
        super().__init__("Account no longer exists.")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "UnprocessableDataError",
    "RateLimitedError",
    "ServerError",
    "OtpError",
    "OtpNotFoundError",
    "OtpMismatchError",
    "OtpWrongPurposeError",
    "OtpExpiredError",
    "TokenError",
    "MissingTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "AccountMissingError",
]
