"""
core/mailer.py -- Outbound email for password reset links.

SMTP via the standard library, STARTTLS when configured. The core only needs a
yes/no completion signal: send_reset_email() returns False when SMTP is not
configured and raises ExternalServiceError when delivery fails.
"""

import logging
import smtplib
from email.message import EmailMessage

from core.errors import ExternalServiceError

logger = logging.getLogger("securebox.mailer")

_RESET_SUBJECT = "Password reset"

_RESET_BODY = """Hello,

To reset your SecureBox password, open the link below:
{link}

The link is valid for {hours} hours.

SecureBox
"""


class Mailer:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        from_email: str = "",
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.use_tls = use_tls

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_email)

    def send_reset_email(self, to: str, reset_link: str, valid_hours: int = 10) -> bool:
        """Send the reset link to `to`. Returns False if SMTP is not configured."""
        if not self.configured:
            logger.warning("SMTP not configured -- reset email to %s not sent", to)
            return False

        msg = EmailMessage()
        msg["From"] = f"SecureBox <{self.from_email}>"
        msg["To"] = to
        msg["Subject"] = _RESET_SUBJECT
        msg.set_content(_RESET_BODY.format(link=reset_link, hours=valid_hours))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Reset email delivery failed: %s", e)
            raise ExternalServiceError() from e
        logger.info("Reset email sent")
        return True
