from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from hydration_tracker.config import Settings
from hydration_tracker.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #12324a; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1e88e5; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{product}</p>{footer}</div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for account flows.

    Without an SMTP host the message is logged instead of sent, so local
    development and tests never need a mail server.
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
        from_name: str = "Hydration Tracker",
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
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_address(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, paragraphs: list[str], link: Optional[tuple[str, str]] = None) -> tuple[str, str]:
        html_parts = [f"<p>{p}</p>" for p in paragraphs]
        text_parts = [title, ""] + paragraphs
        footer = ""
        if link:
            label, url = link
            html_parts.insert(1, f'<p style="margin: 30px 0;"><a href="{url}" class="button">{label}</a></p>')
            text_parts.insert(3, f"\n{url}\n")
            footer = f"<p>If the button doesn't work, copy and paste this URL: {url}</p>"
        html = _HTML_TEMPLATE.format(
            title=title, body="\n        ".join(html_parts), product=self.from_name, footer=footer
        )
        text = "\n".join(text_parts) + f"\n\n---\n{self.from_name}\n"
        return html, text

    def _send_email(self, recipient: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send via SMTP; returns False on delivery failure instead of raising."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_address(recipient),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_address(recipient),
                host=self.smtp_host,
                error=str(exc),
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused", to=self._redact_address(recipient), error=str(exc)
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_address(recipient),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_address(recipient), subject=subject)
        return True

    def send_password_reset(self, recipient: str, token: str, *, ttl_minutes: int = 60) -> bool:
        url = f"{self.base_url}/reset-password?token={token}"
        html, text = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"This link expires in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=("Reset Password", url),
        )
        return self._send_email(recipient, f"Reset your {self.from_name} password", html, text)

    def send_email_verification(self, recipient: str, token: str, *, ttl_minutes: int = 24 * 60) -> bool:
        url = f"{self.base_url}/verify-email?token={token}"
        html, text = self._render(
            "Verify your email",
            [
                "Thanks for signing up! Please confirm your email address.",
                f"This link expires in {ttl_minutes // 60} hours.",
            ],
            link=("Verify Email", url),
        )
        return self._send_email(recipient, f"Verify your {self.from_name} email", html, text)

    def send_welcome(self, recipient: str, name: Optional[str] = None) -> bool:
        greeting = f"Welcome, {name}!" if name else "Welcome!"
        html, text = self._render(
            greeting,
            [
                "Your account is ready. Set a daily goal and start logging what you drink.",
            ],
        )
        return self._send_email(recipient, f"Welcome to {self.from_name}", html, text)

    def send_security_alert(self, recipient: str, event: str) -> bool:
        """Notify the owner that a credential or session change happened."""
        html, text = self._render(
            "Security notice",
            [
                event,
                "All signed-in devices have been logged out.",
                "If you didn't make this change, reset your password immediately.",
            ],
        )
        return self._send_email(recipient, f"{self.from_name} security notice", html, text)
