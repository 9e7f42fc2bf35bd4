"""
auth/tokens.py -- Password hashing, session JWTs, and password-reset tokens.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Salted and adaptive, which
       is what low-entropy secrets need. The cost factor is configurable so the
       test suite can run with the minimum of 4 rounds.

  Session tokens: python-jose with HS256. Tokens carry the account id in
       `sub` plus iat/exp. They are stateless -- nothing is persisted -- so
       validity is exactly "signature verifies and exp is in the future".
       decode_session_token() distinguishes missing / invalid / expired for
       logging; the route layer decides how much of that the client sees.

  Reset tokens: secrets.token_hex(32) gives 256 bits of entropy. One live
       token per user: issuing replaces any previous token in a single
       transaction (AccountStore.replace_reset_token). A token is usable until
       it is consumed or expires, whichever comes first.

  Configuration: the signing secret and lifetimes arrive as one TokenConfig
       value built from Settings at startup and handed to TokenIssuer. Nothing
       here reads configuration at import time.

Layer rule: no imports from api/ or vault/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import Account, PasswordResetToken
from core.errors import AuthError, ValidationError

if TYPE_CHECKING:
    from auth.store import AccountStore
    from core.config import Settings

logger = logging.getLogger("securebox.auth")

_ALGORITHM = "HS256"
_BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt accepts at most 72 bytes. Longer input is refused here rather than
    truncated, so the check does not depend on which bcrypt release is installed.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise ValidationError("Password is too long.", detail=f"At most {_BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash or over-long input
        return False


# ---------------------------------------------------------------------------
# Token configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenConfig:
    secret_key: str
    session_ttl_seconds: int = 30 * 60
    reset_ttl_seconds: int = 10 * 60 * 60
    algorithm: str = _ALGORITHM

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenConfig:
        return cls(
            secret_key=settings.secret_key,
            session_ttl_seconds=settings.token_expire_seconds,
            reset_ttl_seconds=settings.reset_token_expire_seconds,
        )


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and verifies session JWTs and persisted password-reset tokens.

    Usage:
        issuer = TokenIssuer(TokenConfig.from_settings(settings), account_store)
        jwt_str = issuer.create_session_token(account.id)
        user_id = issuer.decode_session_token(jwt_str)      # raises AuthError
        reset = issuer.issue_reset_token(account.id)
        issuer.verify_reset_token(reset.token)              # Account | None
        issuer.consume_reset_token(reset.token)             # True, then False
    """

    def __init__(self, config: TokenConfig, store: AccountStore) -> None:
        self.config = config
        self.store = store

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def create_session_token(self, user_id: str, now: datetime | None = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "iat": issued_at,
            "exp": issued_at + timedelta(seconds=self.config.session_ttl_seconds),
        }
        return jwt.encode(payload, self.config.secret_key, algorithm=self.config.algorithm)

    def decode_session_token(self, token: str | None) -> str:
        """Verify a session JWT and return the account id it was issued for.

        Raises AuthError("missing") for an empty token, AuthError("expired")
        when the signature is valid but exp has passed, and AuthError("invalid")
        for anything else (bad signature, malformed, no subject).
        """
        if not token:
            raise AuthError("missing")
        try:
            payload = jwt.decode(token, self.config.secret_key, algorithms=[self.config.algorithm])
        except ExpiredSignatureError as exc:
            raise AuthError("expired") from exc
        except JWTError as exc:
            raise AuthError("invalid") from exc
        user_id = payload.get("sub")
        if not user_id:
            raise AuthError("invalid")
        return user_id

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def issue_reset_token(self, user_id: str, now: datetime | None = None) -> PasswordResetToken:
        """Mint a reset token for user_id, invalidating any earlier one."""
        now = now or datetime.now(timezone.utc)
        token = PasswordResetToken(
            user_id=user_id,
            token=secrets.token_hex(32),
            expires_at=now + timedelta(seconds=self.config.reset_ttl_seconds),
        )
        self.store.replace_reset_token(token)
        logger.info("Password reset token issued for user %s", user_id)
        return token

    def verify_reset_token(self, token: str, now: datetime | None = None) -> Account | None:
        """Return the owning Account if the token exists and has not expired."""
        now = now or datetime.now(timezone.utc)
        record = self.store.get_reset_token(token)
        if record is None or record.expires_at < now:
            return None
        return self.store.get_by_id(record.user_id)

    def consume_reset_token(self, token: str) -> bool:
        """Delete the token. True only for the call that actually removed it."""
        return self.store.delete_reset_token(token)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    max_age: matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        "token",
        value=token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=max_age,
    )
