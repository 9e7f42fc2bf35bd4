"""
auth/throttle.py -- Sliding-window login lockout.

State lives entirely in the login_attempts table; the throttle holds no
counters of its own. Every evaluate() re-runs the window query, so there is
nothing to reset and nothing to drift:

    failures = failed attempts for user in [now - window, now]
    if len(failures) >= max_failures:
        locked_until = newest failure + lockout
        if locked_until > now: locked

A successful login is recorded but does not clear earlier failures -- only
time moves them out of the window. Attempts rejected because the account is
already locked are recorded as failures by the caller, which extends the
lockout while an attacker keeps trying.

Layer rule: no imports from api/ or vault/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.store import AccountStore

logger = logging.getLogger("securebox.auth.throttle")


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    locked_until: datetime | None = None


class LoginThrottle:
    def __init__(
        self,
        store: AccountStore,
        max_failures: int = 5,
        window_seconds: int = 600,
        lockout_seconds: int = 600,
    ) -> None:
        self.store = store
        self.max_failures = max_failures
        self.window = timedelta(seconds=window_seconds)
        self.lockout = timedelta(seconds=lockout_seconds)

    def evaluate(self, user_id: str, now: datetime | None = None) -> ThrottleDecision:
        """Return whether user_id may attempt a login at `now` (default: current time)."""
        now = now or datetime.now(timezone.utc)
        failures = self.store.get_failed_attempts_since(user_id, now - self.window)
        if len(failures) < self.max_failures:
            return ThrottleDecision(allowed=True)

        # failures is newest-first
        locked_until = failures[0].timestamp + self.lockout
        if locked_until > now:
            return ThrottleDecision(allowed=False, locked_until=locked_until)
        return ThrottleDecision(allowed=True)

    def record(self, user_id: str, success: bool, at: datetime | None = None) -> None:
        """Append one attempt to the audit log."""
        self.store.record_login_attempt(user_id, success, at=at)
        if not success:
            logger.info("Failed login attempt recorded for user %s", user_id)
