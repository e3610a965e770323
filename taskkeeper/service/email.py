from __future__ import annotations

import html
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from taskkeeper.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.5; color: #222;">
  <p>{greeting}<br>{body}</p>
  <p>{closing}</p>
  <p style="font-size: 12px; color: #666;">{signature}</p>
</body>
</html>
"""


class EmailService:
    """Sends the account lifecycle emails.

    With no SMTP host or sender configured the message is logged instead of
    sent, which is what local runs and the test suite rely on.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Task Keeper",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.sender = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.sender)

    @staticmethod
    def _redact_email(address: str) -> str:
        local, sep, domain = address.partition("@")
        if not sep:
            return "redacted"
        return f"{local[:2]}***@{domain}"

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; returns False instead of raising on SMTP trouble."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                preview=(text_body or html_body)[:200],
            )
            return True

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.sender}>"
        message["To"] = to_email
        message.set_content(text_body or subject)
        message.add_alternative(html_body, subtype="html")
        try:
            with self._open() as server:
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                smtp_code=exc.smtp_code,
                error=str(exc),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def _compose(
        self, to_email: str, subject: str, name: str, body: str, closing: str
    ) -> bool:
        html_body = _HTML_TEMPLATE.format(
            greeting=f"Dear {html.escape(name)},",
            body=html.escape(body),
            closing=html.escape(closing),
            signature=html.escape(self.from_name),
        )
        text_body = f"Dear {name},\n{body}\n\n{closing}\n\n-- \n{self.from_name}\n"
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, name: str) -> bool:
        return self._compose(
            to_email,
            f"Welcome, {name}",
            name,
            "thank you for creating an account with Task Keeper.",
            "Have a great time using it!",
        )

    def send_account_removed(self, to_email: str, name: str) -> bool:
        return self._compose(
            to_email,
            "Your account has been removed",
            name,
            "your account has been removed successfully.",
            "Thank you for using Task Keeper.",
        )
