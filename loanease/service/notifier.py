from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from loanease.config import Settings
from loanease.logging import get_logger

logger = get_logger(__name__)

POSTMARK_API_URL = "https://api.postmarkapp.com/email"


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class Notifier(Protocol):
    def send_code(
        self, email: str, code: str, display_name: Optional[str] = None
    ) -> DeliveryResult: ...

    def send_password_reset(
        self, email: str, token: str, display_name: Optional[str] = None
    ) -> DeliveryResult: ...

    def send_email_verification(
        self, email: str, token: str, display_name: Optional[str] = None
    ) -> DeliveryResult: ...

    def send_invitation(
        self,
        email: str,
        token: str,
        *,
        organisation_id: str,
        expires_at: datetime,
        inviter_name: Optional[str] = None,
    ) -> DeliveryResult: ...


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _wrap(title: str, content: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #374151; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #00d37f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ display: inline-block; background: #f3f4f6; padding: 20px 40px; border-radius: 8px; font-size: 32px; font-weight: 700; letter-spacing: 8px; font-family: monospace; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {content}
        <div class="footer"><p>Loanease</p></div>
    </div>
</body>
</html>
"""


class EmailNotifier:
    """Transactional email for codes, resets and invitations.

    Transport is picked from configuration:
    - Postmark HTTP API when ``POSTMARK_SERVER_TOKEN`` is set
    - SMTP with TLS/SSL when ``SMTP_HOST`` is set
    - otherwise a log line (dev mode)

    Delivery failures are returned, never raised.
    """

    def __init__(self, settings: Settings, *, http_client: Optional[httpx.Client] = None) -> None:
        self.postmark_token = settings.postmark_server_token
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_email = settings.email_from_address or settings.smtp_user
        self.from_name = settings.email_from_name
        self.base_url = settings.app_base_url.rstrip("/")
        self.timeout = settings.email_timeout_seconds
        self.code_ttl_minutes = settings.two_fa_code_expiry_minutes
        self.verification_ttl_hours = settings.email_verification_expiry_hours
        self._http_client = http_client

    @property
    def transport(self) -> str:
        if self.postmark_token and self.from_email:
            return "postmark"
        if self.smtp_host and self.from_email:
            return "smtp"
        return "log"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> DeliveryResult:
        transport = self.transport
        if transport == "postmark":
            return self._send_postmark(to_email, subject, html_body, text_body)
        if transport == "smtp":
            return self._send_smtp(to_email, subject, html_body, text_body)
        # Dev mode: log the email instead of sending
        logger.info(
            "email_dev_mode",
            to=_redact_email(to_email),
            subject=subject,
            body_preview=text_body[:200],
        )
        return DeliveryResult(success=True, message_id="dev")

    def _send_postmark(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> DeliveryResult:
        payload = {
            "From": f"{self.from_name} <{self.from_email}>",
            "To": to_email,
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
            "MessageStream": "outbound",
        }
        headers = {
            "Accept": "application/json",
            "X-Postmark-Server-Token": self.postmark_token or "",
        }
        try:
            if self._http_client is not None:
                resp = self._http_client.post(POSTMARK_API_URL, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(POSTMARK_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error(
                "email_postmark_request_failed",
                to=_redact_email(to_email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DeliveryResult(success=False, error=str(exc))

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            message = body.get("Message") if isinstance(body, dict) else None
            logger.error(
                "email_postmark_rejected",
                to=_redact_email(to_email),
                status_code=resp.status_code,
                error=message,
            )
            return DeliveryResult(success=False, error=message or f"HTTP {resp.status_code}")

        message_id = None
        try:
            body = resp.json()
            if isinstance(body, dict):
                message_id = body.get("MessageID")
        except ValueError:
            pass
        logger.info("email_sent", to=_redact_email(to_email), subject=subject, transport="postmark")
        return DeliveryResult(success=True, message_id=message_id)

    def _send_smtp(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> DeliveryResult:
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=_redact_email(to_email),
            )

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

            logger.info("email_sent", to=_redact_email(to_email), subject=subject, transport="smtp")
            return DeliveryResult(success=True)

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return DeliveryResult(success=False, error="smtp authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=_redact_email(to_email), error=str(e))
            return DeliveryResult(success=False, error="recipient refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(success=False, error=str(e))
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(success=False, error=str(e))

    def send_code(
        self, email: str, code: str, display_name: Optional[str] = None
    ) -> DeliveryResult:
        """Send a two-factor verification code."""
        name = html.escape(display_name or "User")
        subject = "Your Verification Code - Loanease"
        html_body = _wrap(
            "Verification Code",
            f"""
        <p>Hi {name},</p>
        <p>Your verification code for <strong>Loanease</strong> is:</p>
        <p style="text-align: center; margin: 25px 0;"><span class="code">{code}</span></p>
        <p>This code will expire in <strong>{self.code_ttl_minutes} minutes</strong>.</p>
        <p>If you didn't request this code, please ignore this email.</p>
""",
        )
        text_body = f"""Hi {display_name or 'User'},

Your verification code for Loanease is: {code}

This code will expire in {self.code_ttl_minutes} minutes.

If you didn't request this code, please ignore this email.

---
Loanease
"""
        return self._send_email(email, subject, html_body, text_body)

    def send_password_reset(
        self, email: str, token: str, display_name: Optional[str] = None
    ) -> DeliveryResult:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/reset-password/confirm?token={token}"
        name = html.escape(display_name or "User")
        subject = "Reset Your Password - Loanease"
        html_body = _wrap(
            "Password Reset",
            f"""
        <p>Hi {name},</p>
        <p>We received a request to reset your password for your <strong>Loanease</strong> account.</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link will expire in <strong>1 hour</strong> for your security.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>
""",
        )
        text_body = f"""Reset your Loanease password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in 1 hour.

If you didn't request this, you can safely ignore this email.

---
Loanease
"""
        return self._send_email(email, subject, html_body, text_body)

    def send_email_verification(
        self, email: str, token: str, display_name: Optional[str] = None
    ) -> DeliveryResult:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        name = html.escape(display_name or "there")
        subject = "Verify your email address - Loanease"
        html_body = _wrap(
            "Verify Your Email",
            f"""
        <p>Hi {name},</p>
        <p>Please confirm the email address for your <strong>Loanease</strong> account.</p>
        <p style="margin: 30px 0;"><a href="{verify_url}" class="button">Verify Email</a></p>
        <p>This link will expire in <strong>{self.verification_ttl_hours} hours</strong>.</p>
        <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>
""",
        )
        text_body = f"""Verify your Loanease email address

Hi {display_name or 'there'},

Confirm your email address by visiting the link below:

{verify_url}

This link will expire in {self.verification_ttl_hours} hours.

---
Loanease
"""
        return self._send_email(email, subject, html_body, text_body)

    def send_invitation(
        self,
        email: str,
        token: str,
        *,
        organisation_id: str,
        expires_at: datetime,
        inviter_name: Optional[str] = None,
    ) -> DeliveryResult:
        """Send an organisation invitation with a registration link."""
        invite_url = f"{self.base_url}/signup/invite?token={token}"
        inviter = html.escape(inviter_name or "A Loanease administrator")
        expires = expires_at.strftime("%d %B %Y")
        subject = "You've been invited to join Loanease"
        html_body = _wrap(
            "Invitation",
            f"""
        <p>Hi there,</p>
        <p><strong>{inviter}</strong> has invited you to join their organisation on Loanease.</p>
        <p>Click the button below to accept the invitation and set up your account.</p>
        <p style="margin: 30px 0;"><a href="{invite_url}" class="button">Accept Invitation</a></p>
        <p>This invitation expires on <strong>{expires}</strong>.</p>
""",
        )
        text_body = f"""You've been invited to join Loanease

{inviter_name or 'A Loanease administrator'} has invited you to join their organisation on Loanease.

Accept the invitation and set up your account:

{invite_url}

This invitation expires on {expires}.

---
Loanease
"""
        logger.debug("invitation_email_prepared", organisation_id=organisation_id)
        return self._send_email(email, subject, html_body, text_body)
