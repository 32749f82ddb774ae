from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Dict, Optional

from kokoru.logging import get_logger

logger = get_logger(__name__)


class EmailDeliveryError(Exception):
    """SMTP delivery failed; the message was not accepted by the relay."""


# template name -> (subject, text body, html body). Bodies use str.format
# placeholders; values are HTML-escaped before rendering the html part.
_TEMPLATES: Dict[str, tuple[str, str, str]] = {
    "verification": (
        "Verify your Kokoru account",
        "Hi {first_name},\n\nPlease confirm your email address by visiting the link below:\n\n"
        "{verification_url}\n\nThis link expires in 24 hours.\n",
        "<h1>Verify your email</h1><p>Hi {first_name},</p>"
        "<p>Please confirm your email address:</p>"
        '<p><a href="{verification_url}" class="button">Verify Email</a></p>'
        "<p>This link expires in 24 hours.</p>",
    ),
    "welcome": (
        "Welcome to Kokoru!",
        "Hi {first_name},\n\nYour account is ready. Sign in any time at:\n\n{login_url}\n",
        "<h1>Welcome to Kokoru</h1><p>Hi {first_name},</p><p>Your account is ready.</p>"
        '<p><a href="{login_url}" class="button">Sign in</a></p>',
    ),
    "passwordReset": (
        "Reset your Kokoru password",
        "Hi {first_name},\n\nWe received a request to reset your password. Visit the link below "
        "to choose a new one:\n\n{reset_url}\n\nThis link expires in 1 hour. If you didn't "
        "request this, you can safely ignore this email.\n",
        "<h1>Reset your password</h1><p>Hi {first_name},</p>"
        "<p>We received a request to reset your password.</p>"
        '<p><a href="{reset_url}" class="button">Reset Password</a></p>'
        "<p>This link expires in 1 hour. If you didn't request this, you can safely ignore this email.</p>",
    ),
    "passwordChanged": (
        "Your password has been changed",
        "Hi {first_name},\n\nThe password for your Kokoru account was just changed. If this "
        "wasn't you, reset your password immediately and contact support.\n",
        "<h1>Password changed</h1><p>Hi {first_name},</p>"
        "<p>The password for your Kokoru account was just changed.</p>"
        "<p>If this wasn't you, reset your password immediately and contact support.</p>",
    ),
    "accountLocked": (
        "Account security notice",
        "Hi {first_name},\n\nYour Kokoru account was temporarily locked: {reason}\n\n"
        "You can try again after the lock expires, or reset your password at:\n\n{reset_request_url}\n",
        "<h1>Account temporarily locked</h1><p>Hi {first_name},</p>"
        "<p>Your Kokoru account was temporarily locked: {reason}</p>"
        '<p><a href="{reset_request_url}" class="button">Reset Password</a></p>',
    ),
}

_HTML_SHELL = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #4f7a3a; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        {content}
        <div class="footer"><p>{from_name}</p></div>
    </div>
</body>
</html>
"""


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured (local development) messages are logged
    instead of sent. Calls block on network I/O; async code should go
    through ``EmailDispatcher`` or ``asyncio.to_thread``.
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
        from_name: str = "Kokoru Garden",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, template: str, data: Dict[str, Any]) -> tuple[str, str, str]:
        try:
            subject, text_tpl, html_tpl = _TEMPLATES[template]
        except KeyError:
            raise ValueError(f"unknown email template: {template}") from None
        values = _Defaults({k: "" if v is None else str(v) for k, v in data.items()})
        escaped = _Defaults({k: html.escape(v) for k, v in values.items()})
        text_body = text_tpl.format_map(values)
        html_body = _HTML_SHELL.format(
            content=html_tpl.format_map(escaped), from_name=html.escape(self.from_name)
        )
        return subject, text_body, html_body

    def send(self, to_email: str, template: str, data: Dict[str, Any]) -> str:
        """Render ``template`` with ``data`` and deliver it.

        Returns the message id. Raises ``EmailDeliveryError`` if the relay
        rejects or cannot be reached.
        """
        subject, text_body, html_body = self.render(template, data)
        return self._send_email(to_email, subject, html_body, text_body, template=template)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        *,
        template: Optional[str] = None,
    ) -> str:
        domain = self.from_email.split("@", 1)[1] if self.from_email and "@" in self.from_email else None
        message_id = make_msgid(domain=domain)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                template=template,
                message_id=message_id,
                body_preview=(text_body or html_body)[:200],
            )
            return message_id

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg["Message-ID"] = message_id
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
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            raise EmailDeliveryError("SMTP authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            raise EmailDeliveryError("recipient refused") from e
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError(f"{type(e).__name__} while sending") from e

        logger.info(
            "email_sent",
            to=self._redact_email(to_email),
            subject=subject,
            template=template,
            message_id=message_id,
        )
        return message_id

    def send_verification_email(self, to_email: str, first_name: str, token: str) -> str:
        return self.send(
            to_email,
            "verification",
            {
                "first_name": first_name or "there",
                "verification_url": f"{self.base_url}/verify-email?token={token}",
            },
        )

    def send_welcome_email(self, to_email: str, first_name: str) -> str:
        return self.send(
            to_email,
            "welcome",
            {"first_name": first_name or "there", "login_url": f"{self.base_url}/login"},
        )

    def send_password_reset_email(self, to_email: str, first_name: str, token: str) -> str:
        return self.send(
            to_email,
            "passwordReset",
            {
                "first_name": first_name or "there",
                "reset_url": f"{self.base_url}/reset-password?token={token}",
            },
        )

    def send_password_changed_email(self, to_email: str, first_name: str) -> str:
        return self.send(to_email, "passwordChanged", {"first_name": first_name or "there"})

    def send_account_locked_email(self, to_email: str, first_name: str, reason: str) -> str:
        return self.send(
            to_email,
            "accountLocked",
            {
                "first_name": first_name or "there",
                "reason": reason,
                "reset_request_url": f"{self.base_url}/forgot-password",
            },
        )
