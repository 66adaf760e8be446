from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from blogauth.config import Settings
from blogauth.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_email_verification(self, to_email: str, token: str) -> bool: ...


class EmailService:
    """Transactional email for the blog admin.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Password reset and email verification links
    - Fallback to logging when not configured (dev mode)

    Sends never raise; failures are logged and reported as False.
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
        from_name: str = "Blog Admin",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_minutes: int = 24 * 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_minutes = verification_ttl_minutes

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
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            verification_ttl_minutes=settings.email_verification_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    @staticmethod
    def _describe_ttl(minutes: int) -> str:
        if minutes % 60 == 0:
            hours = minutes // 60
            return f"{hours} hour" if hours == 1 else f"{hours} hours"
        return f"{minutes} minutes"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            # Dev mode: log instead of sending. The body carries a live link, so
            # only the subject is logged.
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
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

            logger.info(
                "email_sent", recipient=self._redact_email(to_email), subject=subject
            )
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render(self, heading: str, intro: str, url: str, label: str, ttl: str) -> tuple[str, str]:
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><a href="{url}">{label}</a></p>
        <p>This link will expire in {ttl}.</p>
        <p style="font-size: 12px; color: #5b6470;">If the link doesn't work, copy and paste this URL: {url}</p>
    </div>
</body>
</html>
"""
        text_body = f"""{heading}

{intro}

{url}

This link will expire in {ttl}.
"""
        return html_body, text_body

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/admin/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            "We received a request to reset your password. If you didn't request this, "
            "you can safely ignore this email.",
            reset_url,
            "Reset Password",
            self._describe_ttl(self.reset_ttl_minutes),
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/admin/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            "Please confirm your email address to finish setting up your account.",
            verify_url,
            "Verify Email",
            self._describe_ttl(self.verification_ttl_minutes),
        )
        return self._send_email(
            to_email, "Verify your email address", html_body, text_body
        )
