"""
api/routes/v1/auth.py -- Session endpoints.

Routes:
  POST /api/v1/auth/login    -- CAPTCHA + password login; sets JWT cookie
  POST /api/v1/auth/logout   -- clears cookie; 200
  GET  /api/v1/auth/me       -- current account (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AccountDirectory.verify_credentials() provides timing equalization and
       the throttle check -- use it, never inline lookup + verify_password().
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import AccountResponse, LoginRequest, LoginResponse, MessageResponse
from auth.accounts import AccountDirectory
from auth.dependencies import get_current_account
from auth.models import Account
from auth.tokens import TokenIssuer, set_auth_cookie
from core.captcha import CaptchaVerifier
from core.config import get_settings
from core.errors import ValidationError

logger = logging.getLogger("securebox.api.auth")

# Auth policy:
# - POST /api/v1/auth/login:   public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:  public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:      requires auth (get_current_account)
router = APIRouter()


@limiter.limit(get_settings().login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with login and password; set JWT cookie.

    The CAPTCHA is checked before the credentials so a failed CAPTCHA never
    counts as a login attempt. Wrong login and wrong password produce the same
    "bad_credentials" error. A locked account answers 423 with locked_until,
    even for the correct password.
    """
    captcha: CaptchaVerifier = request.app.state.captcha
    if not captcha.validate(body.captcha_token):
        raise ValidationError("Invalid CAPTCHA.")

    accounts: AccountDirectory = request.app.state.accounts
    account = accounts.verify_credentials(body.login, body.password)

    issuer: TokenIssuer = request.app.state.token_issuer
    token = issuer.create_session_token(account.id)
    ttl = issuer.config.session_ttl_seconds
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=ttl,
            user=AccountResponse.from_account(account),
        ).model_dump(),
    )
    set_auth_cookie(resp, token, max_age=ttl, secure=request.app.state.settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    logger.info("Account %s logged in", account.id)
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("token")
    return resp


@router.get("/auth/me", response_model=AccountResponse)
async def me(current: Account = Depends(get_current_account)) -> AccountResponse:
    """Return identity information for the currently authenticated account."""
    return AccountResponse.from_account(current)
