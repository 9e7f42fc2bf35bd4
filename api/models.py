"""
API request and response models for SecureBox REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
vault/models.py, which own the internal domain representation. Route handlers
map between the two.

Input rules (names, email-shaped logins, password strength) are enforced here
so stores and services can assume well-formed values.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Account, LoginEntry, TrustedDevice
from vault.models import CredentialRecord

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Apostrophes, hyphens and spaces are allowed inside names ("O'Neil", "Anne-Marie").
_NAME_SEPARATORS = re.compile(r"[ \-']")

_PASSWORD_RULES = "Password must be at least 8 characters long and contain a lowercase letter, an uppercase letter, a number and a symbol."

# bcrypt rejects (or silently truncates) input past 72 bytes; multibyte characters count in full.
MAX_PASSWORD_BYTES = 72


def _check_name(value: str) -> str:
    if not _NAME_SEPARATORS.sub("", value).isalpha():
        raise ValueError("Name must contain only letters, spaces, - and ' characters.")
    return value


def _check_password_strength(value: str) -> str:
    if (
        len(value) < 8
        or not any(c.islower() for c in value)
        or not any(c.isupper() for c in value)
        or not any(c.isdigit() for c in value)
        or all(c.isalnum() for c in value)
    ):
        raise ValueError(_PASSWORD_RULES)
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must not exceed {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    return value


def _check_not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("Field cannot be empty.")
    return value


# ---------------------------------------------------------------------------
# Envelope + health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error code plus human-readable message."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    first_name: str
    last_name: str
    login: str

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            first_name=account.first_name,
            last_name=account.last_name,
            login=account.login,
        )


class LoginRequest(BaseModel):
    login: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    captcha_token: str = Field(min_length=1, max_length=4096)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    user: AccountResponse


class RegisterRequest(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    login: str = Field(min_length=3, max_length=50, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=64)
    captcha_token: str = Field(min_length=1, max_length=4096)

    @field_validator("first_name", "last_name", "login", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("first_name", "last_name")
    @classmethod
    def letters_only(cls, value: str) -> str:
        return _check_name(value)

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _check_password_strength(value)


class AccountPatch(BaseModel):
    """Partial profile update. Omitted fields are left unchanged."""

    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    password: Optional[str] = Field(default=None, min_length=8, max_length=64)

    @field_validator("first_name", "last_name")
    @classmethod
    def letters_only(cls, value: Optional[str]) -> Optional[str]:
        return _check_name(value.strip()) if value is not None else None

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_strength(value) if value is not None else None


class ResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    login: str = Field(min_length=1, max_length=255)
    captcha_token: str = Field(min_length=1, max_length=4096)


class ResetConfirm(BaseModel):
    reset_token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=64)

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _check_password_strength(value)


# ---------------------------------------------------------------------------
# Login entries + trusted devices
# ---------------------------------------------------------------------------


class LoginEntryCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    login: str = Field(min_length=3, max_length=50, pattern=EMAIL_PATTERN)
    page: str = Field(min_length=1, max_length=50)


class LoginEntryResponse(BaseModel):
    id: str
    login: str
    page: str
    timestamp: str

    @classmethod
    def from_entry(cls, entry: LoginEntry) -> "LoginEntryResponse":
        return cls(id=entry.id, login=entry.login, page=entry.page, timestamp=entry.timestamp or "")


class TrustedDeviceUpsert(BaseModel):
    device_id: str = Field(min_length=1, max_length=255)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    is_trusted: bool = False


class TrustedDeviceResponse(BaseModel):
    device_id: str
    user_agent: Optional[str]
    is_trusted: bool

    @classmethod
    def from_device(cls, device: TrustedDevice) -> "TrustedDeviceResponse":
        return cls(device_id=device.device_id, user_agent=device.user_agent, is_trusted=device.is_trusted)


# ---------------------------------------------------------------------------
# Stored credentials
# ---------------------------------------------------------------------------


class CredentialCreate(BaseModel):
    platform: str = Field(min_length=1, max_length=50)
    login: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=4096)
    logo_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("platform", "login", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _check_not_blank(value)


class CredentialResponse(BaseModel):
    id: str
    user_id: str
    platform: str
    login: str
    logo_url: Optional[str]
    stored_file: str

    @classmethod
    def from_record(cls, record: CredentialRecord) -> "CredentialResponse":
        return cls(
            id=record.id,
            user_id=record.user_id,
            platform=record.platform,
            login=record.login,
            logo_url=record.logo_url,
            stored_file=record.stored_file or "",
        )


class SecretChange(BaseModel):
    new_password: str = Field(min_length=1, max_length=4096)

    @field_validator("new_password")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _check_not_blank(value)


class BulkSecretEntry(BaseModel):
    platform: str = Field(min_length=1, max_length=50)
    login: str = Field(min_length=1, max_length=50)
    new_password: str = Field(min_length=1, max_length=4096)

    @field_validator("new_password")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _check_not_blank(value)


class BulkSecretChange(BaseModel):
    """Every stored credential of the user, each with its new secret."""

    entries: list[BulkSecretEntry] = Field(min_length=1, max_length=500)
