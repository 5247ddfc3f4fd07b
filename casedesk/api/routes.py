from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Response

from casedesk.api.schemas import (
    AccountListResponse,
    AccountResponse,
    Envelope,
    OtpSentResponse,
    PendingAccountResponse,
    PendingListResponse,
    ProfileResponse,
    ResetPasswordRequest,
    SendOtpRequest,
    SigninRequest,
    SigninResponse,
    SignupRequest,
    UpdateProfileRequest,
    UpdateRoleRequest,
)
from casedesk.logging import get_logger
from casedesk.service.guard import AuthContext
from casedesk.service.runtime import check_rate_limit, get_runtime
from casedesk.storage.models import Account, Role

logger = get_logger(__name__)

RENEWED_TOKEN_HEADER = "X-New-Token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def require_service_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> None:
    get_runtime().guard.require_service_key(x_api_key)


router = APIRouter(prefix="/v1", dependencies=[Depends(require_service_key)])


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise 429 once ``key`` has spent its budget for the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise _http_error(
            "rate_limited",
            "Too many requests. Please try again later.",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )


async def get_principal(
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Authenticate the bearer token; attach a renewed token when one was issued."""
    runtime = get_runtime()
    ctx = await runtime.guard.authenticate(authorization)
    if ctx.renewed_token:
        response.headers[RENEWED_TOKEN_HEADER] = ctx.renewed_token
    return ctx


async def get_admin(principal: AuthContext = Depends(get_principal)) -> AuthContext:
    get_runtime().guard.require_role(principal, Role.ADMIN.value)
    return principal


def _account_to_response(account: Account) -> AccountResponse:
    return AccountResponse.from_account(account)


# auth
@router.post("/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOtpRequest):
    """Email a one-time code for signup, sign-in or password reset.

    Raises:
        400: Unknown purpose, or signup without a name
        403: A registration for this email is awaiting approval
        404: Sign-in or reset for an unknown email
        409: Signup for an email that already has an account
        429: Too many codes requested for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"send-otp:{body.email}",
        runtime.settings.send_otp_rate_limit_per_minute,
        60,
    )
    issued = await runtime.otp.issue(body.email, body.purpose, body.name)
    return Envelope(
        status="ok",
        data=OtpSentResponse(
            email=issued.email, purpose=issued.purpose, expires_at=issued.expires_at
        ),
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Register with a signup code.

    In approval mode the registration waits for an admin to verify it; in
    direct mode the account is usable immediately.
    """
    runtime = get_runtime()
    record = await runtime.identity.signup(
        body.name, body.rank, body.email, body.password, body.code
    )
    if isinstance(record, Account):
        data = _account_to_response(record)
    else:
        data = PendingAccountResponse.from_pending(record)
    return Envelope(status="ok", data=data)


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signin:{body.email}",
        runtime.settings.signin_rate_limit_per_minute,
        60,
    )
    account, token = await runtime.identity.signin(body.email, body.password, body.code)
    return Envelope(
        status="ok",
        data=SigninResponse(user=_account_to_response(account), token=token),
    )


@router.patch("/auth/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.identity.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"message": "Password updated successfully."})


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(principal: AuthContext = Depends(get_principal)):
    """Tokens are stateless; the client discards its copy."""
    logger.info("signout", account_id=principal.account_id)
    return Envelope(status="ok", data={"message": "Signed out."})


# users
@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_principal)):
    account = principal.account
    return Envelope(
        status="ok",
        data=ProfileResponse(
            message=f"Welcome, {account.name}", user=_account_to_response(account)
        ),
    )


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin),
):
    runtime = get_runtime()
    accounts = await runtime.identity.list_accounts(limit=limit)
    return Envelope(
        status="ok",
        data=AccountListResponse(items=[_account_to_response(a) for a in accounts]),
    )


@router.get("/users/unverified", response_model=Envelope, tags=["users"])
async def list_unverified(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin),
):
    runtime = get_runtime()
    pending = await runtime.identity.list_pending(limit=limit)
    return Envelope(
        status="ok",
        data=PendingListResponse(
            items=[PendingAccountResponse.from_pending(p) for p in pending]
        ),
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    if principal.account_id != user_id:
        runtime.guard.require_role(principal, Role.ADMIN.value)
    account = await runtime.identity.get_account(user_id)
    return Envelope(status="ok", data=_account_to_response(account))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateProfileRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    account = await runtime.identity.update_profile(
        principal.account,
        user_id,
        name=body.name,
        rank=body.rank,
        password=body.password,
    )
    return Envelope(status="ok", data=_account_to_response(account))


@router.patch("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    body: UpdateRoleRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin),
):
    runtime = get_runtime()
    runtime.guard.ensure_not_self(principal, user_id)
    account = await runtime.identity.set_role(principal.account, user_id, body.role)
    return Envelope(status="ok", data=_account_to_response(account))


@router.patch("/users/{pending_id}/verified", response_model=Envelope, tags=["users"])
async def verify_user(
    pending_id: str = Path(..., max_length=254),
    principal: AuthContext = Depends(get_admin),
):
    """Promote a pending registration (by id or email) to a verified account."""
    runtime = get_runtime()
    account = await runtime.identity.verify(pending_id)
    return Envelope(status="ok", data=_account_to_response(account))


@router.delete("/users/unverified/{pending_id}", response_model=Envelope, tags=["users"])
async def reject_user(
    pending_id: str = Path(..., max_length=254),
    principal: AuthContext = Depends(get_admin),
):
    runtime = get_runtime()
    await runtime.identity.reject(pending_id)
    return Envelope(status="ok", data={"message": "Registration rejected."})


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin),
):
    runtime = get_runtime()
    runtime.guard.ensure_not_self(principal, user_id)
    account = await runtime.identity.deactivate(principal.account, user_id)
    return Envelope(status="ok", data=_account_to_response(account))


# maintenance
@router.post("/maintenance/otp-cleanup", response_model=Envelope, tags=["maintenance"])
async def otp_cleanup(authorization: Optional[str] = Header(None)):
    """Purge expired one-time codes; called by an external scheduler."""
    runtime = get_runtime()
    runtime.guard.require_cron_secret(authorization)
    purged = await runtime.otp.purge_expired()
    return Envelope(status="ok", data={"purged": purged})
