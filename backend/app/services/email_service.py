"""Outbound transactional email over SMTP."""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from app.config import settings

logger = logging.getLogger(__name__)


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """
    SMTP mail sender.

    When no SMTP host is configured (local development) messages are logged
    instead of sent and delivery counts as successful.
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
        from_name: str = "MCOM",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send_email(self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None) -> bool:
        """
        Send one message.

        Returns:
            bool: True if the message was handed to the SMTP server (or logged in dev mode)
        """
        if not self.is_configured:
            logger.info(f"Email dev mode, not sending: to={redact_email(to_email)} subject={subject!r}")
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed for {self.smtp_user}: {e}")
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            # OSError covers connection refusal and socket timeouts
            logger.error(f"Email to {redact_email(to_email)} failed: {type(e).__name__}: {e}")
            return False

        logger.info(f"Email sent to {redact_email(to_email)}: {subject!r}")
        return True

    def send_password_reset(self, to_email: str, name: str, reset_url: str) -> bool:
        """Send the password reset link; valid for the configured reset window."""
        minutes = settings.PASSWORD_RESET_EXPIRE_MINUTES
        safe_url = html.escape(reset_url, quote=True)
        html_body = (
            "<h2>Password Reset Request</h2>"
            f"<p>Hi {html.escape(name)},</p>"
            f"<p>Click below to reset your password. This link is valid for {minutes} minutes:</p>"
            f'<a href="{safe_url}" target="_blank">{safe_url}</a>'
        )
        text_body = (
            f"Hi {name},\n\n"
            f"Use the link below to reset your password. It is valid for {minutes} minutes:\n"
            f"{reset_url}\n"
        )
        return self.send_email(to_email, "Password Reset", html_body, text_body)


email_service = EmailService(
    smtp_host=settings.SMTP_HOST or None,
    smtp_port=settings.SMTP_PORT,
    smtp_user=settings.SMTP_USER or None,
    smtp_password=settings.SMTP_PASSWORD or None,
    smtp_use_tls=settings.SMTP_USE_TLS,
    from_email=settings.SMTP_FROM_EMAIL or None,
    from_name=settings.SMTP_FROM_NAME,
    timeout=settings.SMTP_TIMEOUT_SECONDS,
)
