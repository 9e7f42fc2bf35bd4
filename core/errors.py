"""
core/errors.py -- Domain exception taxonomy for SecureBox.

Every deterministic rejection (bad input, conflict, lockout, bad token) is a
SecureBoxError subclass carrying the HTTP status and the machine-readable
error code the API envelope uses. api/main.py owns the single exception
handler that turns these into responses, so stores and services raise plain
domain errors and never import FastAPI.

StorageError and ExternalServiceError are the "unexpected failure" branch:
their message is generic on purpose and the original exception is chained
(raise ... from exc) so it reaches the logs, never the client.

Layer rule: core/ is the kernel. No imports from api/, auth/, or vault/.
"""

from __future__ import annotations

from datetime import datetime


class SecureBoxError(Exception):
    """Base class for all domain errors. Maps 1:1 onto an HTTP error envelope."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(SecureBoxError):
    status_code = 400
    code = "validation_error"
    message = "Request validation failed."


class InvalidCredentials(SecureBoxError):
    """Unknown login and wrong password are deliberately the same error."""

    status_code = 401
    code = "bad_credentials"
    message = "Invalid login or password."


class AuthError(SecureBoxError):
    """Missing, invalid, or expired session token.

    reason is kept for logging; the client sees a per-reason message but the
    same status and code.
    """

    status_code = 401
    code = "unauthorized"

    _MESSAGES = {
        "missing": "Authentication required.",
        "invalid": "Invalid token.",
        "expired": "Token has expired.",
    }

    def __init__(self, reason: str = "invalid") -> None:
        self.reason = reason
        super().__init__(self._MESSAGES.get(reason, self._MESSAGES["invalid"]))


class Forbidden(SecureBoxError):
    status_code = 403
    code = "forbidden"
    message = "Forbidden."


class NotFound(SecureBoxError):
    status_code = 404
    code = "not_found"
    message = "Not found."


class Conflict(SecureBoxError):
    status_code = 409
    code = "conflict"
    message = "Resource already exists."


class LockedOut(SecureBoxError):
    status_code = 423
    code = "locked_out"

    def __init__(self, locked_until: datetime) -> None:
        self.locked_until = locked_until
        super().__init__(
            f"Account locked until {locked_until.isoformat()}",
            detail=locked_until.isoformat(),
        )


class StorageError(SecureBoxError):
    status_code = 500
    code = "internal_error"
    message = "An unexpected error occurred."


class ExternalServiceError(SecureBoxError):
    status_code = 502
    code = "external_service_error"
    message = "An upstream service is unavailable."
