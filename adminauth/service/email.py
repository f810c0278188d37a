from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from adminauth.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Plain-text account notifications over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Password reset, account setup and setup confirmation messages
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Admin Service",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3001").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(self, recipient: str, subject: str, body: str) -> bool:
        """Send ``body`` to ``recipient``; returns False when delivery fails."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(recipient),
                subject=subject,
            )
            return True

        msg = MIMEMultipart()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg.attach(MIMEText(body, "plain"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=self._redact_email(recipient), error=str(e)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(recipient), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password/{token}"
        body = (
            "Forgot your password? Submit a PATCH request with your new password "
            f"and passwordConfirm to: {reset_url}\n\n"
            f"This link is valid for {ttl_minutes} minutes. "
            "If you didn't forget your password, please ignore this email."
        )
        return self.send(to_email, f"Your password reset token (valid for {ttl_minutes} min)", body)

    def send_account_setup(
        self, to_email: str, username: str, token: str, ttl_hours: int
    ) -> bool:
        setup_url = f"{self.base_url}/setup-user/{token}"
        body = (
            f"Hello {username},\n\n"
            "An administrator created an account for you.\n\n"
            f"To set up your account, open the following link:\n{setup_url}\n\n"
            f"The link can be used once and expires in {ttl_hours} hours. "
            "If it expires, contact an administrator for a new one.\n"
        )
        return self.send(to_email, "Set up your account", body)

    def send_setup_complete(self, to_email: str, username: str) -> bool:
        body = (
            f"Hello {username},\n\n"
            "Your account setup is complete and you can now sign in.\n"
        )
        return self.send(to_email, "Your account is ready", body)
