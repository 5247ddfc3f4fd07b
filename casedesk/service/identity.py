from __future__ import annotations

from typing import List, Optional, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from casedesk.config import Settings, SignupMode
from casedesk.logging import get_logger
from casedesk.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    UnprocessableDataError,
    ValidationError,
)
from casedesk.service.otp import OtpEngine
from casedesk.service.tokens import SessionTokenService
from casedesk.storage.common import CredentialStore
from casedesk.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    StoreError,
    UniqueViolation,
)
from casedesk.storage.models import (
    Account,
    OtpPurpose,
    PendingAccount,
    normalize_email,
)

logger = get_logger(__name__)

FIELD_MESSAGES = {
    "name": "Name must be between 2 and 20 characters.",
    "rank": "Invalid rank provided.",
    "role": "Role must be officer or admin.",
    "email": "Invalid email format.",
    "password": "Password must be at least 8 characters.",
}


def constraint_error(exc: ConstraintViolation) -> Union[ConflictError, UnprocessableDataError]:
    """Translate a store constraint violation into a field-scoped service error.

    Uniqueness maps to Conflict, everything else to UnprocessableData. The
    constraint name itself never reaches the message.
    """
    field = exc.field or "request"
    if isinstance(exc, UniqueViolation):
        return ConflictError(
            f"{field.capitalize()} already exists.",
            detail={field: f"{field.capitalize()} already exists."},
        )
    message = FIELD_MESSAGES.get(field, "Invalid value provided.")
    return UnprocessableDataError(message, detail={field: message})


class IdentityService:
    """Signup, admin approval, sign-in and account maintenance.

    Every credential-changing flow is gated by a one-time code redeemed
    through the OTP engine before anything is written.
    """

    def __init__(
        self,
        store: CredentialStore,
        otp: OtpEngine,
        tokens: SessionTokenService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.otp = otp
        self.tokens = tokens
        self.signup_mode = SignupMode(settings.signup_mode)
        self.password_min_length = settings.password_min_length
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _check_password(self, password: str) -> None:
        if len(password or "") < self.password_min_length:
            message = (
                f"Password must be at least {self.password_min_length} characters."
            )
            raise UnprocessableDataError(message, detail={"password": message})

    async def signup(
        self, name: str, rank: str, email: str, password: str, code: str
    ) -> Union[PendingAccount, Account]:
        email = normalize_email(email)
        if await self.store.get_account_by_email(email):
            raise ConflictError(
                "User already exists. Please log in instead.",
                detail={"email": "An account with this email already exists."},
            )
        self._check_password(password)
        await self.otp.validate(email, code, OtpPurpose.SIGNUP.value)
        password_hash = self._hash_password(password)

        try:
            if self.signup_mode is SignupMode.DIRECT:
                record: Union[PendingAccount, Account] = await self.store.insert_account(
                    Account.new(
                        name=name.strip(), rank=rank, email=email, password_hash=password_hash
                    )
                )
            else:
                record = await self.store.insert_pending(
                    PendingAccount.new(
                        name=name.strip(), rank=rank, email=email, password_hash=password_hash
                    )
                )
        except ConstraintViolation as exc:
            raise constraint_error(exc) from exc

        self.logger.info(
            "signup_recorded", signup_mode=self.signup_mode.value, record_id=record.id
        )
        return record

    async def _find_pending(self, pending_ref: str) -> Optional[PendingAccount]:
        if "@" in pending_ref:
            return await self.store.get_pending_by_email(normalize_email(pending_ref))
        return await self.store.get_pending(pending_ref)

    async def verify(self, pending_ref: str) -> Account:
        """Promote a pending signup (by id or email) to a verified account.

        The unique index on account email decides concurrent approvals: the
        loser purges the leftover pending record and reports Conflict.
        """
        pending = await self._find_pending(pending_ref)
        if not pending:
            raise NotFoundError(
                "Pending registration not found.", detail={"id": "No pending registration."}
            )
        if await self.store.get_account_by_email(pending.email):
            await self.store.delete_pending(pending.id)
            raise ConflictError(
                "User is already verified.", detail={"reason": "already_verified"}
            )
        account = Account.new(
            name=pending.name,
            rank=pending.rank,
            email=pending.email,
            password_hash=pending.password_hash,
        )
        try:
            created = await self.store.insert_account(account)
        except UniqueViolation as exc:
            await self.store.delete_pending(pending.id)
            self.logger.info("verify_lost_race", pending_id=pending.id)
            raise ConflictError(
                "User is already verified.", detail={"reason": "already_verified"}
            ) from exc
        except ConstraintViolation as exc:
            raise constraint_error(exc) from exc
        await self.store.delete_pending(pending.id)
        self.logger.info("account_verified", account_id=created.id)
        return created

    async def reject(self, pending_ref: str) -> None:
        pending = await self._find_pending(pending_ref)
        if not pending or not await self.store.delete_pending(pending.id):
            raise NotFoundError(
                "Pending registration not found.", detail={"id": "No pending registration."}
            )
        self.logger.info("pending_rejected", pending_id=pending.id)

    async def signin(self, email: str, password: str, code: str) -> tuple[Account, str]:
        email = normalize_email(email)
        await self.otp.validate(email, code, OtpPurpose.SIGNIN.value)
        account = await self.store.get_account_by_email(email)
        if not account:
            raise NotFoundError(
                "User not found. Please sign up.",
                detail={"email": "No account is registered with this email."},
            )
        if account.is_deleted:
            raise ForbiddenError(
                "This account has been deactivated.", detail={"reason": "account_deactivated"}
            )
        if not account.verified:
            raise ForbiddenError(
                "Your registration is awaiting admin approval.",
                detail={"reason": "awaiting_approval"},
            )
        if not self._password_matches(account.password_hash, password):
            self.logger.warning("signin_password_mismatch", account_id=account.id)
            raise AuthenticationError(
                "Incorrect password.", detail={"password": "Incorrect password."}
            )
        token = self.tokens.issue(account)
        self.logger.info("signin_succeeded", account_id=account.id)
        return account, token

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        email = normalize_email(email)
        self._check_password(new_password)
        await self.otp.validate(email, code, OtpPurpose.RESET_PASSWORD.value)
        account = await self.store.get_account_by_email(email)
        if not account or account.is_deleted:
            raise NotFoundError(
                "User not found. Please sign up.",
                detail={"email": "No account is registered with this email."},
            )
        try:
            await self.store.update_account(
                account.id, password_hash=self._hash_password(new_password)
            )
        except ConstraintViolation as exc:
            raise constraint_error(exc) from exc
        except RecordNotFound as exc:
            raise NotFoundError("User not found. Please sign up.") from exc
        self.logger.info("password_reset", account_id=account.id)

    async def get_account(self, account_id: str) -> Account:
        account = await self.store.get_account(account_id)
        if not account:
            raise NotFoundError("User not found.", detail={"id": "No such user."})
        return account

    async def update_profile(
        self,
        actor: Account,
        account_id: str,
        *,
        name: Optional[str] = None,
        rank: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Account:
        if actor.id != account_id and not actor.is_admin:
            raise ForbiddenError("You can only update your own profile.")
        if name is None and rank is None and password is None:
            raise ValidationError(
                "No fields to update.", detail={"request": "Provide name, rank or password."}
            )
        password_hash = None
        if password is not None:
            self._check_password(password)
            password_hash = self._hash_password(password)
        try:
            updated = await self.store.update_account(
                account_id,
                name=name.strip() if name is not None else None,
                rank=rank,
                password_hash=password_hash,
            )
        except RecordNotFound as exc:
            raise NotFoundError("User not found.", detail={"id": "No such user."}) from exc
        except ConstraintViolation as exc:
            raise constraint_error(exc) from exc
        self.logger.info("profile_updated", account_id=account_id, actor_id=actor.id)
        return updated

    async def set_role(self, actor: Account, account_id: str, role: str) -> Account:
        if actor.id == account_id:
            raise ForbiddenError(
                "You cannot change your own role.", detail={"reason": "self_modification"}
            )
        try:
            updated = await self.store.update_account(account_id, role=role)
        except RecordNotFound as exc:
            raise NotFoundError("User not found.", detail={"id": "No such user."}) from exc
        except ConstraintViolation as exc:
            raise constraint_error(exc) from exc
        self.logger.info("role_changed", account_id=account_id, role=role, actor_id=actor.id)
        return updated

    async def deactivate(self, actor: Account, account_id: str) -> Account:
        if actor.id == account_id:
            raise ForbiddenError(
                "You cannot deactivate your own account.",
                detail={"reason": "self_modification"},
            )
        try:
            updated = await self.store.update_account(account_id, is_deleted=True)
        except RecordNotFound as exc:
            raise NotFoundError("User not found.", detail={"id": "No such user."}) from exc
        self.logger.info("account_deactivated", account_id=account_id, actor_id=actor.id)
        return updated

    async def list_accounts(self, *, limit: int = 100) -> List[Account]:
        return await self.store.list_accounts(limit=limit)

    async def list_pending(self, *, limit: int = 100) -> List[PendingAccount]:
        return await self.store.list_pending(limit=limit)

    async def bootstrap_admin(
        self, *, name: str, rank: str, email: str, password: str
    ) -> Account:
        """Create an admin account, or promote an existing one, without an OTP.

        Used by the operator bootstrap script only.
        """
        email = normalize_email(email)
        self._check_password(password)
        password_hash = self._hash_password(password)
        try:
            existing = await self.store.get_account_by_email(email)
            if existing:
                return await self.store.update_account(
                    existing.id, role="admin", password_hash=password_hash, is_deleted=False
                )
            return await self.store.insert_account(
                Account.new(
                    name=name, rank=rank, email=email, password_hash=password_hash, role="admin"
                )
            )
        except ConstraintViolation as exc:
            raise constraint_error(exc) from exc
        except StoreError as exc:
            raise ServerError("Unable to write the admin account.") from exc
