"""
auth/accounts.py -- Account directory: registration, credential checks, profile updates.

verify_credentials() is the only place a password is checked. Its order of
operations is the login state machine:

    1. unknown login         -> bcrypt against a dummy hash, InvalidCredentials
    2. throttle says locked  -> record failure, LockedOut(locked_until)
    3. wrong password        -> record failure, InvalidCredentials
    4. right password        -> record success, return Account

Cases 1 and 3 raise the same error with the same message, and case 1 still
pays the bcrypt cost, so neither the response nor its timing reveals whether
a login exists [C1].

Uniqueness of login is enforced by the users.login UNIQUE constraint. The
pre-check in create() only exists to give the common case a clean error
without relying on the exception path; the IntegrityError handler is what
actually closes the race between two concurrent registrations.

Layer rule: no imports from api/ or vault/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.models import Account
from auth.store import AccountStore
from auth.throttle import LoginThrottle
from auth.tokens import hash_password, verify_password
from core.errors import Conflict, InvalidCredentials, LockedOut

logger = logging.getLogger("securebox.auth.accounts")

_UPDATABLE_FIELDS = {"first_name", "last_name", "login", "password"}


class AccountDirectory:
    def __init__(self, store: AccountStore, throttle: LoginThrottle, bcrypt_rounds: int = 12) -> None:
        self.store = store
        self.throttle = throttle
        self.bcrypt_rounds = bcrypt_rounds
        # Computed once per directory, at the same cost as real hashes, so an
        # unknown-login check takes as long as a wrong-password check.
        self._dummy_hash = hash_password("securebox_timing_dummy", rounds=bcrypt_rounds)

    def create(self, first_name: str, last_name: str, login: str, password: str) -> str:
        """Register a new account and return its id. Raises Conflict if the login is taken."""
        if self.store.get_by_login(login) is not None:
            raise Conflict("Login already exists.")
        account = Account(
            first_name=first_name,
            last_name=last_name,
            login=login,
            password_hash=hash_password(password, rounds=self.bcrypt_rounds),
        )
        try:
            user_id = self.store.create_user(account)
        except IntegrityError as exc:
            logger.info("Concurrent registration for an existing login rejected")
            raise Conflict("Login already exists.") from exc
        logger.info("Account %s registered", user_id)
        return user_id

    def get_by_id(self, user_id: str) -> Account | None:
        return self.store.get_by_id(user_id)

    def get_by_login(self, login: str) -> Account | None:
        return self.store.get_by_login(login)

    def verify_credentials(self, login: str, password: str) -> Account:
        """Return the Account for a correct login/password pair.

        Raises LockedOut while the throttle window is engaged (even for the
        correct password) and InvalidCredentials for an unknown login or a
        wrong password.
        """
        account = self.store.get_by_login(login)
        if account is None:
            verify_password(password, self._dummy_hash)
            raise InvalidCredentials()

        decision = self.throttle.evaluate(account.id)
        if not decision.allowed:
            self.throttle.record(account.id, False)
            logger.warning("Login rejected for locked account %s until %s", account.id, decision.locked_until)
            raise LockedOut(decision.locked_until)

        if not verify_password(password, account.password_hash or ""):
            self.throttle.record(account.id, False)
            raise InvalidCredentials()

        self.throttle.record(account.id, True)
        return account

    def update(self, user_id: str, **fields) -> Account | None:
        """Apply only the provided fields. A `password` field is re-hashed.

        None values are treated as "not provided". Returns the updated Account,
        or None if user_id does not exist. Raises Conflict if a new login
        collides with another account.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        updates = {k: v for k, v in fields.items() if v is not None}
        if "password" in updates:
            updates["password_hash"] = hash_password(updates.pop("password"), rounds=self.bcrypt_rounds)
        try:
            found = self.store.update_user(user_id, **updates)
        except IntegrityError as exc:
            raise Conflict("Login already exists.") from exc
        if not found:
            return None
        return self.store.get_by_id(user_id)
