from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from html import escape
from typing import Optional, Protocol

from latchkey.config import Settings
from latchkey.logging import get_logger

logger = get_logger(__name__)


class MailKind(str, Enum):
    ACTIVATION = "activation"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGED = "email_changed"


class Mailer(Protocol):
    def send(
        self,
        kind: MailKind,
        to_email: str,
        link: Optional[str],
        expiry_description: Optional[str],
    ) -> bool: ...


_TEMPLATES = {
    MailKind.ACTIVATION: (
        "Account Activation (valid for {expiry})",
        "Welcome! Please activate your account by visiting the link below:",
    ),
    MailKind.PASSWORD_RESET: (
        "Your password reset token (valid for {expiry})",
        "Forgot your password? Visit the link below to choose a new one. "
        "If you didn't request this, you can safely ignore this email.",
    ),
    MailKind.EMAIL_CHANGED: (
        "Email Change Notification",
        "The email address on your account was changed. "
        "If you didn't make this change, please contact support immediately.",
    ),
}


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Activation, password reset and email-change notices
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
        from_name: str = "Latchkey",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(
        self,
        kind: MailKind,
        to_email: str,
        link: Optional[str],
        expiry_description: Optional[str],
    ) -> bool:
        """Render and send one message; False when delivery failed."""
        subject, text_body, html_body = self.render(kind, link, expiry_description)
        return self._send_email(to_email, subject, html_body, text_body)

    def render(
        self,
        kind: MailKind,
        link: Optional[str],
        expiry_description: Optional[str],
    ) -> tuple[str, str, str]:
        subject_tpl, lead_tpl = _TEMPLATES[MailKind(kind)]
        expiry = expiry_description or ""
        subject = subject_tpl.format(expiry=expiry)
        lead = lead_tpl.format(link=link or "")
        text_lines = [lead]
        html_parts = [f"<p>{escape(lead)}</p>"]
        if link and kind is not MailKind.EMAIL_CHANGED:
            text_lines += ["", link]
            html_parts.append(f'<p><a href="{escape(link)}">{escape(link)}</a></p>')
        if expiry_description:
            text_lines += ["", f"This link will expire in {expiry_description}."]
            html_parts.append(f"<p>This link will expire in {escape(expiry_description)}.</p>")
        text_lines += ["", "---", self.from_name]
        html_body = "<html><body>" + "".join(html_parts) + "</body></html>"
        return subject, "\n".join(text_lines), html_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

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
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
