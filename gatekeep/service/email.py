from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from gatekeep.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional mail for the account security flows.

    Without SMTP settings the service runs in dev mode: messages are logged
    (recipient redacted) and reported as sent.
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
        from_name: str = "Gatekeep",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent, False otherwise."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _compose(self, heading: str, paragraphs: list[str]) -> tuple[str, str]:
        html_paras = "".join(f"<p>{escape(p)}</p>" for p in paragraphs)
        html_body = (
            "<!DOCTYPE html><html><body>"
            f"<h1>{escape(heading)}</h1>{html_paras}"
            f"<p style=\"color:#5b6470;font-size:12px\">{escape(self.from_name)}</p>"
            "</body></html>"
        )
        text_body = "\n\n".join([heading, *paragraphs, f"---\n{self.from_name}"])
        return html_body, text_body

    def send_password_reset_otp(self, to_email: str, code: str, ttl_minutes: int = 10) -> bool:
        html_body, text_body = self._compose(
            "Your password reset code",
            [
                f"Use this code to reset your password: {code}",
                f"The code expires in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
        )
        return self._send_email(to_email, "Password reset code", html_body, text_body)

    def send_password_reset_confirmation(self, to_email: str) -> bool:
        html_body, text_body = self._compose(
            "Your password was reset",
            [
                "Your password has been reset and all devices were signed out.",
                "If this wasn't you, contact your administrator immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was reset", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._compose(
            "Your password was changed",
            [
                "Your password was changed and your other devices were signed out.",
                "If this wasn't you, reset your password immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_mfa_enabled(self, to_email: str) -> bool:
        html_body, text_body = self._compose(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication is now active on your account.",
                "You'll be asked for a code from your authenticator app when signing in.",
            ],
        )
        return self._send_email(to_email, "Two-factor authentication enabled", html_body, text_body)

    def send_mfa_disabled(self, to_email: str) -> bool:
        html_body, text_body = self._compose(
            "Two-factor authentication disabled",
            [
                "Two-factor authentication was turned off for your account.",
                "If this wasn't you, reset your password and re-enable it.",
            ],
        )
        return self._send_email(to_email, "Two-factor authentication disabled", html_body, text_body)
