"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session JWT is looked up in priority order:
  1. "token" cookie -- set by POST /auth/login for the browser client.
  2. Authorization: Bearer <token> header -- for API clients and tests.

get_current_account() is the session guard every protected route depends on.
It raises core.errors.AuthError (missing / invalid / expired); api/main.py
turns that into a 401 envelope. require_owner() is the per-record ownership
check: path user ids must match the authenticated account.

Layer rule: no imports from api/ or vault/. auth/dependencies.py may import
from fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.models import Account
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.errors import AuthError, Forbidden

logger = logging.getLogger("securebox.auth")


def _token_from_request(request: Request) -> str | None:
    token: str | None = request.cookies.get("token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_current_account(request: Request) -> Account:
    """Require a valid session. Raises AuthError if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    issuer: TokenIssuer = request.app.state.token_issuer
    store: AccountStore = request.app.state.account_store

    try:
        user_id = issuer.decode_session_token(_token_from_request(request))
    except AuthError as exc:
        logger.info("Rejected session on %s %s: %s", request.method, request.url.path, exc.reason)
        raise

    account = store.get_by_id(user_id)
    if account is None:
        # Validly signed token for an account that no longer exists
        logger.info("Rejected session for unknown user %s", user_id)
        raise AuthError("invalid")
    return account


def require_owner(user_id: str, account: Account) -> None:
    """Raise Forbidden unless the path's user_id is the authenticated account."""
    if user_id != account.id:
        raise Forbidden()
