"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AccountStore is the repository; the _row_to_* functions are the mappers.
Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Uniqueness lives in the schema, not in application pre-checks:
    users.login                       UNIQUE
    password_reset_tokens.user_id     UNIQUE (one live token per user)
    trusted_devices(user_id, device_id) UNIQUE
  Callers may pre-check for a friendly error message, but the IntegrityError
  raised by these constraints is the authoritative conflict signal.

  Every child table references users.id with ON DELETE CASCADE. SQLite only
  enforces foreign keys when PRAGMA foreign_keys=ON is set per connection,
  which _set_sqlite_pragmas() does.

Timestamps:
  Stored as fixed-width ISO 8601 UTC strings (microsecond precision) so the
  lexicographic order SQLite uses in WHERE/ORDER BY equals chronological
  order. The sliding-window throttle query depends on this.

`metadata` is shared with vault/store.py so credential records can declare a
foreign key to users.id.

Layer rule: no imports from api/ or vault/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Account, LoginAttempt, LoginEntry, PasswordResetToken, TrustedDevice

logger = logging.getLogger("securebox.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'securebox.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("login", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("timestamp", String(32), nullable=False),
    Column("success", Integer, nullable=False),  # boolean stored as 0/1
    Index("ix_login_attempts_window", "user_id", "success", "timestamp"),
)

_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("token", String(64), nullable=False, unique=True),  # secrets.token_hex(32)
    Column("expires_at", String(32), nullable=False),
)

_trusted_devices = Table(
    "trusted_devices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("device_id", String(255), nullable=False),
    Column("user_agent", Text),
    Column("is_trusted", Integer, nullable=False, server_default="0"),
    UniqueConstraint("user_id", "device_id", name="uq_user_device"),
)

_login_entries = Table(
    "login_entries",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("login", String(255), nullable=False),
    Column("page", String(255), nullable=False),
    Column("timestamp", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes the ON DELETE
    CASCADE clauses above take effect.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite-specific setup both stores need."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # FastAPI runs sync route handlers in a thread pool.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string.

    timespec="microseconds" keeps the width constant even when microsecond
    is 0, so string comparison stays chronological.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for accounts and every per-account auth record.

    Usage:
        store = AccountStore()
        user_id = store.create_user(Account(first_name="Ada", last_name="L", login="ada@example.com",
                                            password_hash=hash_password("...")))
        account = store.get_by_login("ada@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(text("SELECT 1")).scalar() == 1
        except SQLAlchemyError as e:
            logger.error("Database ping failed: %s", e)
            return False

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_user(self, account: Account) -> str:
        """Insert a new account and return its generated id.

        Raises sqlalchemy.exc.IntegrityError if the login already exists.
        Callers translate that into Conflict -- it is the only reliable signal
        when two registrations for the same login race.
        """
        user_id = account.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    first_name=account.first_name,
                    last_name=account.last_name,
                    login=account.login,
                    password_hash=account.password_hash,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return user_id

    def get_by_login(self, login: str) -> Account | None:
        """Look up an account by exact login (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.login == login)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, user_id: str) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing account.

        Accepted fields: first_name, last_name, login, password_hash. Hashing
        is the caller's job -- this method writes values as given.

        Returns True if a row was updated, False if user_id was not found.
        Raises IntegrityError if a login change collides with another account.
        """
        if not fields:
            return self.get_by_id(user_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete an account and, by cascade, everything it owns.

        Credential files on disk are not touched; that is the file store's job.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Login attempts (append-only)
    # ------------------------------------------------------------------

    def record_login_attempt(self, user_id: str, success: bool, at: datetime | None = None) -> LoginAttempt:
        attempt = LoginAttempt(
            id=_new_id(),
            user_id=user_id,
            timestamp=at or datetime.now(timezone.utc),
            success=success,
        )
        with self.engine.connect() as conn:
            conn.execute(
                _login_attempts.insert().values(
                    id=attempt.id,
                    user_id=user_id,
                    timestamp=to_iso(attempt.timestamp),
                    success=1 if success else 0,
                )
            )
            conn.commit()
        return attempt

    def get_failed_attempts_since(self, user_id: str, since: datetime) -> list[LoginAttempt]:
        """Return failed attempts at or after `since`, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_attempts.select()
                .where(
                    (_login_attempts.c.user_id == user_id)
                    & (_login_attempts.c.success == 0)
                    & (_login_attempts.c.timestamp >= to_iso(since))
                )
                .order_by(_login_attempts.c.timestamp.desc())
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def list_login_attempts(self, user_id: str) -> list[LoginAttempt]:
        """Return the full attempt log for a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_attempts.select()
                .where(_login_attempts.c.user_id == user_id)
                .order_by(_login_attempts.c.timestamp)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def replace_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        """Delete every token the user holds and insert `token`, atomically.

        engine.begin() wraps both statements in one transaction, so no reader
        ever sees the user with zero tokens between the delete and the insert,
        and a failed insert leaves the previous token in place.
        """
        token.id = token.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(_reset_tokens.delete().where(_reset_tokens.c.user_id == token.user_id))
            conn.execute(
                _reset_tokens.insert().values(
                    id=token.id,
                    user_id=token.user_id,
                    token=token.token,
                    expires_at=to_iso(token.expires_at),
                )
            )
        return token

    def get_reset_token(self, token: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token == token)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def delete_reset_token(self, token: str) -> bool:
        """Delete a token by value. Returns True only if a row was removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_reset_tokens.delete().where(_reset_tokens.c.token == token))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def list_trusted_devices(self, user_id: str) -> list[TrustedDevice]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _trusted_devices.select()
                .where(_trusted_devices.c.user_id == user_id)
                .order_by(_trusted_devices.c.id)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        """Insert the device, or update it in place if (user_id, device_id) exists.

        One INSERT .. ON CONFLICT statement, so concurrent first-time upserts of
        the same device cannot collide on uq_user_device.
        """
        values = {"user_agent": device.user_agent, "is_trusted": 1 if device.is_trusted else 0}
        stmt = sqlite_insert(_trusted_devices).values(user_id=device.user_id, device_id=device.device_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id", "device_id"], set_=values)
        with self.engine.begin() as conn:
            conn.execute(stmt)
        return device

    def delete_trusted_device(self, user_id: str, device_id: str) -> TrustedDevice | None:
        """Delete one device and return it, or None if the user had no such device."""
        key = (_trusted_devices.c.user_id == user_id) & (_trusted_devices.c.device_id == device_id)
        with self.engine.begin() as conn:
            row = conn.execute(_trusted_devices.select().where(key)).fetchone()
            if row is None:
                return None
            conn.execute(_trusted_devices.delete().where(key))
        return _row_to_device(row)

    # ------------------------------------------------------------------
    # Login entries
    # ------------------------------------------------------------------

    def create_login_entry(self, entry: LoginEntry) -> LoginEntry:
        entry.id = entry.id or _new_id()
        entry.timestamp = entry.timestamp or _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _login_entries.insert().values(
                    id=entry.id,
                    user_id=entry.user_id,
                    login=entry.login,
                    page=entry.page,
                    timestamp=entry.timestamp,
                )
            )
            conn.commit()
        return entry

    def list_login_entries(self, user_id: str) -> list[LoginEntry]:
        """Return a user's login entries, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_entries.select()
                .where(_login_entries.c.user_id == user_id)
                .order_by(_login_entries.c.timestamp.desc())
            ).fetchall()
        return [_row_to_login_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        first_name=row.first_name,
        last_name=row.last_name,
        login=row.login,
        password_hash=row.password_hash,
        created_at=row.created_at,
    )


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        user_id=row.user_id,
        timestamp=from_iso(row.timestamp),
        success=bool(row.success),
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=from_iso(row.expires_at),
    )


def _row_to_device(row) -> TrustedDevice:
    return TrustedDevice(
        user_id=row.user_id,
        device_id=row.device_id,
        user_agent=row.user_agent,
        is_trusted=bool(row.is_trusted),
    )


def _row_to_login_entry(row) -> LoginEntry:
    return LoginEntry(
        id=row.id,
        user_id=row.user_id,
        login=row.login,
        page=row.page,
        timestamp=row.timestamp,
    )
