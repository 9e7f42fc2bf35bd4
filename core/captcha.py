"""
core/captcha.py -- reCAPTCHA v3 verification.

The CAPTCHA is a gate the API calls before costly or enumerable operations
(registration, login, reset request). The verifier only answers yes/no; a
transport failure is not a "no" -- it raises ExternalServiceError so the
client gets a 5xx instead of a misleading "invalid CAPTCHA".
"""

import logging
from typing import Optional

import requests

from core.errors import ExternalServiceError

logger = logging.getLogger("securebox.captcha")


class CaptchaVerifier:
    """Validate reCAPTCHA tokens against Google's siteverify endpoint.

    Usage:
        verifier = CaptchaVerifier(secret=settings.captcha_secret)
        if not verifier.validate(body.captcha_token): ...
    """

    def __init__(
        self,
        secret: str,
        verify_url: str = "https://www.google.com/recaptcha/api/siteverify",
        min_score: float = 0.5,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.min_score = min_score
        # Same hardening as any outbound session: few redirects, short timeout.
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def validate(self, token: str) -> bool:
        """Return True if the token is valid and scores above min_score.

        No configured secret means verification cannot succeed -- returns False.
        """
        if not self.secret or not token:
            return False
        try:
            resp = self._session.post(
                self.verify_url,
                data={"secret": self.secret, "response": token},
                timeout=10,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("reCAPTCHA verification failed: %s", e)
            raise ExternalServiceError() from e
        return bool(data.get("success")) and float(data.get("score", 0)) > self.min_score
