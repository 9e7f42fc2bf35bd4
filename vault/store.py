"""
vault/store.py -- SQLAlchemy Core persistence for credential records.

Pattern: Repository + Data Mapper, same as auth/store.py.
CredentialRecordStore is the repository; _row_to_record is the mapper.

Each record points at one file in CredentialFileStore. The store is the only
caller that pairs the two, so the rules that keep them consistent live here:

  - The record id is minted before the insert because the filename is derived
    from it. The file is written first; if the insert then loses a uniqueness
    race, the freshly written file is removed again.
  - stored_file is always derive_filename(id). Callers cannot set it.
  - UNIQUE(user_id, platform, login) is the authoritative duplicate check.
    The lookup in create() only produces the friendly error for the common
    non-racing case.
  - replace_all() validates the complete key set before touching anything.

Security: all queries use bound parameters. No f-strings in SQL.
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, ForeignKey, String, Table, Text, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.store import make_engine, metadata, to_iso
from core.errors import Conflict, NotFound, ValidationError
from vault.files import CredentialFileStore
from vault.models import CredentialRecord, SecretUpdate

logger = logging.getLogger("securebox.vault")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'securebox.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_credentials = Table(
    "credentials",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("platform", String(50), nullable=False),
    Column("login", String(255), nullable=False),
    Column("logo_url", Text),
    Column("stored_file", String(12), nullable=False),  # "<8 hex>.txt"
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "platform", "login", name="uq_user_platform_login"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialRecordStore:
    """Repository for CredentialRecord plus the file each record owns.

    Usage:
        store = CredentialRecordStore(CredentialFileStore(files_dir), db_url)
        record_id = store.create(CredentialRecord(user_id=uid, platform="github", login="alice"), "s3cret")
        store.update_secret(uid, "github", "alice", "n3w")
        store.delete(uid, "github", "alice")
        store.close()
    """

    def __init__(self, files: CredentialFileStore, db_url: str = _DEFAULT_DB_URL) -> None:
        self.files = files
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    def create(self, record: CredentialRecord, secret: str) -> str:
        """Store a new credential and its secret. Returns the new record id.

        Raises Conflict if (user_id, platform, login) already exists.
        """
        if self.find_by_user_platform_login(record.user_id, record.platform, record.login) is not None:
            raise Conflict("Password already exists.")

        record_id = str(uuid.uuid4())
        filename = self.files.write(record.user_id, record_id, secret)
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _credentials.insert().values(
                        id=record_id,
                        user_id=record.user_id,
                        platform=record.platform,
                        login=record.login,
                        logo_url=record.logo_url,
                        stored_file=filename,
                        created_at=to_iso(datetime.now(timezone.utc)),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            self.files.remove(record.user_id, record_id)
            logger.info("Concurrent duplicate credential rejected for user %s", record.user_id)
            raise Conflict("Password already exists.") from exc

        record.id = record_id
        record.stored_file = filename
        return record_id

    def find_by_user(self, user_id: str) -> list[CredentialRecord]:
        """Return all of a user's records ordered by platform, then login."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _credentials.select()
                .where(_credentials.c.user_id == user_id)
                .order_by(_credentials.c.platform, _credentials.c.login)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def find_by_user_platform_login(self, user_id: str, platform: str, login: str) -> Optional[CredentialRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_key(user_id, platform, login))).fetchone()
        return _row_to_record(row) if row is not None else None

    def update_secret(self, user_id: str, platform: str, login: str, secret: str) -> Optional[CredentialRecord]:
        """Overwrite one record's secret. Returns the record, or None if it does not exist."""
        record = self.find_by_user_platform_login(user_id, platform, login)
        if record is None:
            return None
        filename = self.files.write(user_id, record.id, secret)
        with self.engine.connect() as conn:
            conn.execute(_credentials.update().where(_credentials.c.id == record.id).values(stored_file=filename))
            conn.commit()
        record.stored_file = filename
        return record

    def delete(self, user_id: str, platform: str, login: str) -> Optional[CredentialRecord]:
        """Delete a record and its file. Returns the deleted record, or None.

        The file is removed inside the row's transaction: if the filesystem
        refuses, the row deletion rolls back and the record still points at
        its file.
        """
        key = _key(user_id, platform, login)
        with self.engine.begin() as conn:
            row = conn.execute(_credentials.select().where(key)).fetchone()
            if row is None:
                return None
            conn.execute(_credentials.delete().where(key))
            self.files.remove(user_id, row.id)
        return _row_to_record(row)

    def replace_all(self, user_id: str, updates: list[SecretUpdate]) -> list[CredentialRecord]:
        """Replace the secret of every record the user owns in one call.

        The (platform, login) keys in `updates` must be exactly the user's
        stored keys -- no additions, omissions, renames, or duplicates. Any
        mismatch raises ValidationError before a single file or row is written.
        Raises NotFound if the user has no records at all.
        """
        existing = self.find_by_user(user_id)
        if not existing:
            raise NotFound("No passwords found.")

        by_key = {(r.platform, r.login): r for r in existing}
        input_keys = [(u.platform, u.login) for u in updates]
        if len(input_keys) != len(set(input_keys)) or set(input_keys) != set(by_key):
            raise ValidationError("All accounts must be updated.")

        updated: list[CredentialRecord] = []
        with self.engine.begin() as conn:
            for update in updates:
                record = by_key[(update.platform, update.login)]
                record.stored_file = self.files.write(user_id, record.id, update.secret)
                conn.execute(
                    _credentials.update()
                    .where(_credentials.c.id == record.id)
                    .values(stored_file=record.stored_file)
                )
                updated.append(record)
        logger.info("Replaced %d secrets for user %s", len(updated), user_id)
        return updated

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _key(user_id: str, platform: str, login: str):
    return (
        (_credentials.c.user_id == user_id) & (_credentials.c.platform == platform) & (_credentials.c.login == login)
    )


def _row_to_record(row) -> CredentialRecord:
    return CredentialRecord(
        id=row.id,
        user_id=row.user_id,
        platform=row.platform,
        login=row.login,
        logo_url=row.logo_url,
        stored_file=row.stored_file,
        created_at=row.created_at,
    )
