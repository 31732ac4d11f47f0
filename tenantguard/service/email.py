from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional, Protocol

from tenantguard.config import Settings
from tenantguard.logging import get_logger, redact_email

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_password_reset(
        self, to_email: str, token: str, *, tenant_slug: str, expires_minutes: int
    ) -> bool: ...

    def send_verification(
        self, to_email: str, token: str, *, tenant_slug: str, expires_hours: int = 24
    ) -> bool: ...

    def send_two_factor_enabled(self, to_email: str) -> bool: ...


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {paragraphs}
        {button}
        <div class="footer">
            <p>{product}</p>
            {fallback}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured (dev mode) messages are logged instead of
    sent. Callers invoke it after their tenant transaction has closed.
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
        from_name: str = "MyERP v2",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

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
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        title: str,
        paragraphs: list[str],
        *,
        link: Optional[str] = None,
        link_label: str = "",
    ) -> tuple[str, str]:
        html_paragraphs = "\n        ".join(f"<p>{escape(p)}</p>" for p in paragraphs)
        button = fallback = ""
        if link:
            button = f'<p style="margin: 30px 0;"><a href="{escape(link)}" class="button">{escape(link_label)}</a></p>'
            fallback = f"<p>If the button doesn't work, copy and paste this URL: {escape(link)}</p>"
        html_body = _HTML_TEMPLATE.format(
            title=escape(title),
            paragraphs=html_paragraphs,
            button=button,
            product=escape(self.from_name),
            fallback=fallback,
        )
        text_parts = [title, ""] + paragraphs
        if link:
            text_parts += ["", link]
        text_parts += ["", "---", self.from_name]
        return html_body, "\n".join(text_parts) + "\n"

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
                to=redact_email(to_email),
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
                to=redact_email(to_email),
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_password_reset(
        self, to_email: str, token: str, *, tenant_slug: str, expires_minutes: int = 60
    ) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/auth/reset-password?tenant={tenant_slug}&token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new password.",
                f"This link will expire in {expires_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=reset_url,
            link_label="Reset Password",
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_verification(
        self, to_email: str, token: str, *, tenant_slug: str, expires_hours: int = 24
    ) -> bool:
        verify_url = f"{self.base_url}/auth/verify-email?tenant={tenant_slug}&token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Please verify your email address to activate your account.",
                f"This link will expire in {expires_hours} hours.",
            ],
            link=verify_url,
            link_label="Verify Email",
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        """Send confirmation that two-factor authentication was enabled."""
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                f"Two-factor authentication has been enabled on your {self.from_name} account.",
                "You will now need to enter a code from your authenticator app when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Two-factor authentication enabled", html_body, text_body)
