"""
api/routes/v1/users.py -- Registration, profile, login history, trusted devices, password reset.

Routes:
  POST   /api/v1/users                                   -- register (public, CAPTCHA)
  POST   /api/v1/users/reset-password                    -- request reset link (public, CAPTCHA)
  POST   /api/v1/users/reset-password/confirm            -- set new password with reset token (public)
  GET    /api/v1/users/{user_id}                         -- own profile
  PATCH  /api/v1/users/{user_id}                         -- update own names / password
  GET    /api/v1/users/{user_id}/logins                  -- own login entries, newest first
  POST   /api/v1/users/{user_id}/logins                  -- append a login entry
  GET    /api/v1/users/{user_id}/trusted-devices         -- own devices
  PATCH  /api/v1/users/{user_id}/trusted-devices         -- upsert a device by device_id
  DELETE /api/v1/users/{user_id}/trusted-devices/{id}    -- remove a device

Every {user_id} route depends on get_current_account and then require_owner:
a valid session for one account never reads or writes another's rows.

Reset request answers with the same message whether or not the login exists,
so it cannot be used to enumerate accounts. The CAPTCHA is checked before the
lookup for the same reason.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import (
    AccountPatch,
    AccountResponse,
    LoginEntryCreate,
    LoginEntryResponse,
    MessageResponse,
    RegisterRequest,
    ResetConfirm,
    ResetRequest,
    TrustedDeviceResponse,
    TrustedDeviceUpsert,
)
from auth.accounts import AccountDirectory
from auth.dependencies import get_current_account, require_owner
from auth.models import Account, LoginEntry, TrustedDevice
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.captcha import CaptchaVerifier
from core.config import get_settings
from core.errors import AuthError, NotFound, StorageError, ValidationError
from core.mailer import Mailer

logger = logging.getLogger("securebox.api.users")

_RESET_REQUESTED = "If the login exists, a reset link has been sent."

router = APIRouter()


def _require_captcha(request: Request, token: str) -> None:
    captcha: CaptchaVerifier = request.app.state.captcha
    if not captcha.validate(token):
        raise ValidationError("Invalid CAPTCHA.")


def reset_link(base: str, token: str, expires_at: datetime) -> str:
    """Build the link mailed to the user: {base}/{token}?exp={expiry, ISO with Z}."""
    exp = expires_at.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"{base.rstrip('/')}/{token}?exp={exp}"


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(get_settings().login_rate_limit)
@router.post("/users", response_model=AccountResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> AccountResponse:
    """Create an account and its (empty) file directory. 409 if the login is taken.

    The row is removed again if the directory cannot be created, so a retry
    is not refused with a conflict.
    """
    _require_captcha(request, body.captcha_token)
    accounts: AccountDirectory = request.app.state.accounts
    user_id = accounts.create(body.first_name, body.last_name, body.login, body.password)
    try:
        request.app.state.file_store.ensure_user_dir(user_id)
    except StorageError:
        request.app.state.account_store.delete_user(user_id)
        logger.warning("Registration of account %s rolled back: no file directory", user_id)
        raise
    return AccountResponse(id=user_id, first_name=body.first_name, last_name=body.last_name, login=body.login)


@limiter.limit(get_settings().login_rate_limit)
@router.post("/users/reset-password", response_model=MessageResponse)
def request_password_reset(request: Request, body: ResetRequest) -> MessageResponse:
    """Mail a single-use reset link if the login exists. Always answers the same message."""
    _require_captcha(request, body.captcha_token)

    accounts: AccountDirectory = request.app.state.accounts
    account = accounts.get_by_login(body.login)
    if account is None:
        return MessageResponse(message=_RESET_REQUESTED)

    issuer: TokenIssuer = request.app.state.token_issuer
    reset = issuer.issue_reset_token(account.id)
    link = reset_link(request.app.state.settings.reset_link_base, reset.token, reset.expires_at)
    mailer: Mailer = request.app.state.mailer
    hours = issuer.config.reset_ttl_seconds // 3600
    if not mailer.send_reset_email(account.login, link, valid_hours=hours):
        logger.warning("Reset token for account %s issued but no email was sent", account.id)
    return MessageResponse(message=_RESET_REQUESTED)


@router.post("/users/reset-password/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: ResetConfirm) -> MessageResponse:
    """Set a new password with a reset token. The token is consumed first and works once."""
    issuer: TokenIssuer = request.app.state.token_issuer
    account = issuer.verify_reset_token(body.reset_token)
    if account is None:
        raise AuthError("invalid")
    # Two concurrent confirms can both verify; only the one that deletes the row proceeds.
    if not issuer.consume_reset_token(body.reset_token):
        raise AuthError("invalid")

    accounts: AccountDirectory = request.app.state.accounts
    accounts.update(account.id, password=body.new_password)
    logger.info("Password reset completed for account %s", account.id)
    return MessageResponse(message="Password has been changed.")


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}", response_model=AccountResponse)
def get_profile(user_id: str, current: Account = Depends(get_current_account)) -> AccountResponse:
    require_owner(user_id, current)
    return AccountResponse.from_account(current)


@router.patch("/users/{user_id}", response_model=AccountResponse)
def update_profile(
    request: Request,
    user_id: str,
    body: AccountPatch,
    current: Account = Depends(get_current_account),
) -> AccountResponse:
    """Update first/last name and/or password. Omitted fields stay unchanged."""
    require_owner(user_id, current)
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("No fields to update.")

    accounts: AccountDirectory = request.app.state.accounts
    updated = accounts.update(user_id, **changes)
    if updated is None:
        raise NotFound("User not found.")
    return AccountResponse.from_account(updated)


# ---------------------------------------------------------------------------
# Login entries
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/logins", response_model=list[LoginEntryResponse])
def list_logins(
    request: Request,
    user_id: str,
    current: Account = Depends(get_current_account),
) -> list[LoginEntryResponse]:
    require_owner(user_id, current)
    store: AccountStore = request.app.state.account_store
    return [LoginEntryResponse.from_entry(e) for e in store.list_login_entries(user_id)]


@router.post("/users/{user_id}/logins", response_model=LoginEntryResponse, status_code=201)
def create_login(
    request: Request,
    user_id: str,
    body: LoginEntryCreate,
    current: Account = Depends(get_current_account),
) -> LoginEntryResponse:
    require_owner(user_id, current)
    store: AccountStore = request.app.state.account_store
    entry = store.create_login_entry(LoginEntry(user_id=user_id, login=body.login, page=body.page))
    return LoginEntryResponse.from_entry(entry)


# ---------------------------------------------------------------------------
# Trusted devices
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/trusted-devices", response_model=list[TrustedDeviceResponse])
def list_devices(
    request: Request,
    user_id: str,
    current: Account = Depends(get_current_account),
) -> list[TrustedDeviceResponse]:
    require_owner(user_id, current)
    store: AccountStore = request.app.state.account_store
    return [TrustedDeviceResponse.from_device(d) for d in store.list_trusted_devices(user_id)]


@router.patch("/users/{user_id}/trusted-devices", response_model=TrustedDeviceResponse)
def upsert_device(
    request: Request,
    user_id: str,
    body: TrustedDeviceUpsert,
    current: Account = Depends(get_current_account),
) -> TrustedDeviceResponse:
    """Insert the device, or update user_agent / is_trusted if device_id is already known."""
    require_owner(user_id, current)
    store: AccountStore = request.app.state.account_store
    device = store.upsert_trusted_device(
        TrustedDevice(
            user_id=user_id,
            device_id=body.device_id,
            user_agent=body.user_agent,
            is_trusted=body.is_trusted,
        )
    )
    return TrustedDeviceResponse.from_device(device)


@router.delete("/users/{user_id}/trusted-devices/{device_id}", response_model=MessageResponse)
def delete_device(
    request: Request,
    user_id: str,
    device_id: str,
    current: Account = Depends(get_current_account),
) -> MessageResponse:
    require_owner(user_id, current)
    store: AccountStore = request.app.state.account_store
    if store.delete_trusted_device(user_id, device_id) is None:
        raise NotFound("Device not found.")
    return MessageResponse(message=f"Device {device_id} removed from trusted devices.")
