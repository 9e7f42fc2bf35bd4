"""
vault/models.py -- Domain dataclasses for stored credentials.

Pure data containers. The secret itself is never a field here: it lives only
in the file named by stored_file, and stored_file is derived from id by
vault.files.derive_filename -- it is set by the store, never by callers.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class CredentialRecord:
    """One saved platform login. Unique per (user_id, platform, login).

    id is None before the record is written to the database.
    """

    user_id: str
    platform: str
    login: str
    logo_url: Optional[str] = None
    stored_file: Optional[str] = None  # "<8 hex>.txt", derived from id
    id: Optional[str] = None
    created_at: str = ""  # ISO 8601, set by store on insert


@dataclass
class SecretUpdate:
    """One element of a bulk replace: the key of an existing record and its new secret."""

    platform: str
    login: str
    secret: str
