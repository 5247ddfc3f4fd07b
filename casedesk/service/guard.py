from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from casedesk.config import Settings
from casedesk.logging import get_logger
from casedesk.service.errors import (
    AccountMissingError,
    ForbiddenError,
    MissingTokenError,
)
from casedesk.service.tokens import SessionTokenService
from casedesk.storage.common import CredentialStore
from casedesk.storage.models import Account, Role

logger = get_logger(__name__)


def _secrets_match(supplied: str, expected: str) -> bool:
    return hmac.compare_digest(
        supplied.encode("utf-8", "surrogateescape"),
        expected.encode("utf-8", "surrogateescape"),
    )


@dataclass
class AuthContext:
    account: Account
    role: str
    renewed_token: Optional[str] = None

    @property
    def account_id(self) -> str:
        return self.account.id


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def _role_allows(role: str, required: str) -> bool:
    if role == required:
        return True
    return role == Role.ADMIN.value and required == Role.OFFICER.value


class AuthGuard:
    """Resolves bearer tokens to live accounts and enforces roles.

    The account is re-read from the store on every request, so deleting or
    deactivating an account cuts off its outstanding tokens immediately.
    """

    def __init__(
        self, store: CredentialStore, tokens: SessionTokenService, settings: Settings
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.service_api_key = settings.service_api_key
        self.cron_secret = settings.cron_secret

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = _extract_bearer(authorization)
        if not token:
            raise MissingTokenError()
        # InvalidTokenError / TokenExpiredError propagate with their reasons
        check = self.tokens.verify_and_maybe_refresh(token)
        account = await self.store.get_account(str(check.claims["user_id"]))
        if not account:
            logger.info("auth_account_missing", user_id=check.claims["user_id"])
            raise AccountMissingError()
        if account.is_deleted:
            raise ForbiddenError(
                "This account has been deactivated.", detail={"reason": "account_deactivated"}
            )
        return AuthContext(
            account=account, role=account.role, renewed_token=check.renewed_token
        )

    def require_role(self, ctx: AuthContext, role: str) -> None:
        if not _role_allows(ctx.role, role):
            logger.info(
                "auth_role_denied", account_id=ctx.account_id, role=ctx.role, required=role
            )
            raise ForbiddenError(
                "You do not have permission to perform this action.",
                detail={"reason": "role_required", "required_role": role},
            )

    def ensure_not_self(self, ctx: AuthContext, target_id: str) -> None:
        if ctx.account_id == target_id:
            raise ForbiddenError(
                "You cannot perform this action on your own account.",
                detail={"reason": "self_modification"},
            )

    def require_service_key(self, api_key: Optional[str]) -> None:
        """Enforce the shared X-API-Key when one is configured."""
        if not self.service_api_key:
            return
        if not api_key or not _secrets_match(api_key, self.service_api_key):
            raise ForbiddenError("Invalid or missing API key.", detail={"reason": "api_key"})

    def require_cron_secret(self, authorization: Optional[str]) -> None:
        token = _extract_bearer(authorization)
        if not self.cron_secret or not token or not _secrets_match(
            token, self.cron_secret
        ):
            raise ForbiddenError("Unauthorized maintenance request.", detail={"reason": "cron_secret"})
