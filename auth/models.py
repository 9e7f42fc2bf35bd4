"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these own the domain shape.

All ids are opaque UUID4 strings assigned by the store. Timestamps are
timezone-aware UTC datetimes; the store handles the on-disk representation.

Layer rule: no imports from api/ or vault/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Account:
    """A registered user. login is an email address and is globally unique.

    password_hash is a bcrypt hash; it never leaves the service in a response.
    """

    first_name: str
    last_name: str
    login: str
    id: str | None = None
    password_hash: str | None = None
    created_at: str | None = None


@dataclass
class LoginAttempt:
    """One row of the append-only login audit log. Never updated or deleted."""

    user_id: str
    timestamp: datetime
    success: bool
    id: str | None = None


@dataclass
class PasswordResetToken:
    """A single-use reset credential. At most one per user at any time."""

    user_id: str
    token: str
    expires_at: datetime
    id: str | None = None


@dataclass
class TrustedDevice:
    """Advisory record of a device the user marked as trusted.

    Keyed by (user_id, device_id). Not consulted by login.
    """

    user_id: str
    device_id: str
    user_agent: str | None = None
    is_trusted: bool = False


@dataclass
class LoginEntry:
    """A client-reported use of a stored credential on some page."""

    user_id: str
    login: str
    page: str
    timestamp: str | None = None
    id: str | None = None
