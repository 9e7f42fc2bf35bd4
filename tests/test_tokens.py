"""Unit tests for auth/tokens.py -- session JWTs and password-reset tokens.

Covers:
- Session token round trip; expired, tampered, wrong-key, missing tokens
- Reset token: 64 hex chars, 10 h expiry, verify before/after expiry
- Issuing a second reset token invalidates the first
- consume_reset_token() is single-use
- bcrypt helpers reject malformed hashes without raising
- hash_password refuses input over 72 UTF-8 bytes instead of truncating
"""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.tokens import TokenConfig, TokenIssuer, hash_password, verify_password
from core.errors import AuthError, ValidationError

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestPasswordHashing:
    def test_hash_verifies(self):
        hashed = hash_password("Str0ng!Passw0rd", rounds=4)
        assert verify_password("Str0ng!Passw0rd", hashed)
        assert not verify_password("other", hashed)

    def test_hash_is_salted(self):
        assert hash_password("same", rounds=4) != hash_password("same", rounds=4)

    def test_malformed_hash_is_false(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_over_72_bytes_is_rejected_not_truncated(self):
        # 38 characters, 72 bytes: the largest accepted input
        at_limit = "Aa1!" + "ż" * 34
        assert len(at_limit.encode("utf-8")) == 72
        assert verify_password(at_limit, hash_password(at_limit, rounds=4))
        with pytest.raises(ValidationError):
            hash_password(at_limit + "x", rounds=4)

    def test_over_long_input_does_not_verify(self):
        hashed = hash_password("Str0ng!Passw0rd", rounds=4)
        assert verify_password("ż" * 40, hashed) is False


class TestSessionTokens:
    def test_round_trip(self, issuer, user_id):
        token = issuer.create_session_token(user_id)
        assert issuer.decode_session_token(token) == user_id

    def test_claims(self, issuer, user_id):
        token = issuer.create_session_token(user_id, now=datetime.now(timezone.utc))
        claims = jwt.get_unverified_claims(token)
        assert claims["sub"] == user_id
        assert claims["exp"] - claims["iat"] == 30 * 60

    def test_expired(self, issuer, user_id):
        token = issuer.create_session_token(user_id, now=datetime.now(timezone.utc) - timedelta(hours=1))
        with pytest.raises(AuthError) as exc:
            issuer.decode_session_token(token)
        assert exc.value.reason == "expired"

    @pytest.mark.parametrize("token", ["", None])
    def test_missing(self, issuer, token):
        with pytest.raises(AuthError) as exc:
            issuer.decode_session_token(token)
        assert exc.value.reason == "missing"

    def test_tampered(self, issuer, user_id):
        token = issuer.create_session_token(user_id)
        with pytest.raises(AuthError) as exc:
            issuer.decode_session_token(token[:-2] + ("AA" if token[-2:] != "AA" else "BB"))
        assert exc.value.reason == "invalid"

    def test_signed_with_other_key(self, account_store, issuer, user_id):
        other = TokenIssuer(TokenConfig(secret_key="y" * 48), account_store)
        with pytest.raises(AuthError) as exc:
            issuer.decode_session_token(other.create_session_token(user_id))
        assert exc.value.reason == "invalid"

    def test_garbage(self, issuer):
        with pytest.raises(AuthError) as exc:
            issuer.decode_session_token("not.a.jwt")
        assert exc.value.reason == "invalid"


class TestResetTokens:
    def test_issue_shape_and_expiry(self, issuer, user_id):
        reset = issuer.issue_reset_token(user_id, now=NOW)
        assert len(reset.token) == 64
        int(reset.token, 16)
        assert reset.expires_at == NOW + timedelta(hours=10)

    def test_verify_returns_account_before_expiry(self, issuer, user_id):
        reset = issuer.issue_reset_token(user_id, now=NOW)
        account = issuer.verify_reset_token(reset.token, now=NOW + timedelta(hours=9, minutes=59))
        assert account.id == user_id

    def test_verify_after_expiry_is_none(self, issuer, user_id):
        reset = issuer.issue_reset_token(user_id, now=NOW)
        assert issuer.verify_reset_token(reset.token, now=NOW + timedelta(hours=10, seconds=1)) is None

    def test_unknown_token_is_none(self, issuer):
        assert issuer.verify_reset_token("0" * 64) is None

    def test_second_issue_invalidates_first(self, issuer, user_id):
        first = issuer.issue_reset_token(user_id)
        second = issuer.issue_reset_token(user_id)
        assert first.token != second.token
        assert issuer.verify_reset_token(first.token) is None
        assert issuer.verify_reset_token(second.token).id == user_id

    def test_consume_is_single_use(self, issuer, user_id):
        reset = issuer.issue_reset_token(user_id)
        assert issuer.consume_reset_token(reset.token) is True
        assert issuer.consume_reset_token(reset.token) is False
        assert issuer.verify_reset_token(reset.token) is None

    def test_custom_ttl(self, account_store, user_id):
        short = TokenIssuer(TokenConfig(secret_key="z" * 48, reset_ttl_seconds=60), account_store)
        reset = short.issue_reset_token(user_id, now=NOW)
        assert reset.expires_at == NOW + timedelta(seconds=60)
