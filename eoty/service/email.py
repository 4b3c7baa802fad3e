from __future__ import annotations

import smtplib
import ssl
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import List, Optional

import httpx

from eoty.config import MailTransportKind, Settings
from eoty.logging import get_logger, redact_email
from eoty.service.errors import MailDeliveryError

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 32px; font-weight: 700; letter-spacing: 8px; background: #f3f4f6; padding: 16px 24px; border-radius: 8px; display: inline-block; }
        .button { display: inline-block; background: #4f46e5; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def _page(body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}    </style>
</head>
<body>
    <div class="container">
{body}
        <div class="footer">
            <p>EOTY Platform</p>
        </div>
    </div>
</body>
</html>
"""


@dataclass
class OutgoingMail:
    to: str
    subject: str
    html: str
    text: Optional[str] = None


class MailTransport:
    """Hands a rendered message to a delivery backend.

    ``deliver`` returns a confirmation id or raises :class:`MailDeliveryError`.
    """

    name = "base"

    def deliver(self, message: OutgoingMail, *, sender: str) -> str:
        raise NotImplementedError


class DevTransport(MailTransport):
    """Logs the message instead of sending it."""

    name = "dev"

    def deliver(self, message: OutgoingMail, *, sender: str) -> str:
        body = message.text or message.html
        logger.info(
            "email_dev_mode",
            to=redact_email(message.to),
            subject=message.subject,
            body_preview=body[:200],
        )
        return f"dev-{uuid.uuid4()}"


class SmtpTransport(MailTransport):
    name = "smtp"

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 30,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def deliver(self, message: OutgoingMail, *, sender: str) -> str:
        to_email = message.to
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = sender
        msg["To"] = to_email
        message_id = make_msgid(domain=self.host)
        msg["Message-ID"] = message_id

        if message.text:
            msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.host,
            port=self.port,
            use_tls=self.use_tls,
            to=redact_email(to_email),
        )
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(sender, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.host, self.port, context=context, timeout=self.timeout
                ) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(sender, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            raise MailDeliveryError("SMTP authentication failed") from e
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.host,
                port=self.port,
                error=str(e),
            )
            raise MailDeliveryError("SMTP connection failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            raise MailDeliveryError("recipient refused") from e
        except smtplib.SMTPSenderRefused as e:
            logger.error("email_sender_refused", to=redact_email(to_email), error=str(e))
            raise MailDeliveryError("sender refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise MailDeliveryError("SMTP error") from e
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.host,
                port=self.port,
                error=str(e),
            )
            raise MailDeliveryError("TLS negotiation failed") from e
        except TimeoutError as e:
            logger.error(
                "email_timeout",
                to=redact_email(to_email),
                host=self.host,
                port=self.port,
                error=str(e),
            )
            raise MailDeliveryError("SMTP timeout") from e
        except OSError as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise MailDeliveryError("SMTP socket error") from e
        return message_id


class ApiTransport(MailTransport):
    """POSTs the message as JSON to a generic HTTPS mail API."""

    name = "api"

    def __init__(
        self,
        *,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def deliver(self, message: OutgoingMail, *, sender: str) -> str:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "from": sender,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        try:
            with httpx.Client(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response = client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_api_rejected",
                to=redact_email(message.to),
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise MailDeliveryError("mail API rejected the message") from e
        except httpx.HTTPError as e:
            logger.error(
                "email_api_error",
                to=redact_email(message.to),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise MailDeliveryError("mail API unreachable") from e
        try:
            body = response.json()
        except ValueError:
            body = {}
        confirmation = (body.get("id") or body.get("messageId")) if isinstance(body, dict) else None
        return str(confirmation or f"api-{uuid.uuid4()}")


class RecordingTransport(MailTransport):
    """Keeps every message in memory; used by tests and local tooling."""

    name = "recording"

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: List[OutgoingMail] = []
        self.fail = fail

    def deliver(self, message: OutgoingMail, *, sender: str) -> str:
        if self.fail:
            raise MailDeliveryError("recording transport set to fail")
        self.sent.append(message)
        return f"rec-{len(self.sent)}"

    def subjects(self) -> List[str]:
        return [m.subject for m in self.sent]


def build_transport(settings: Settings) -> MailTransport:
    """Select the transport once at start-up; unconfigured backends log instead."""
    if settings.email_service_type == MailTransportKind.API:
        if settings.email_service_api_url:
            return ApiTransport(
                url=settings.email_service_api_url, api_key=settings.email_service_api_key
            )
        logger.warning("email_api_not_configured")
        return DevTransport()
    if settings.smtp_host and (settings.email_from_address or settings.smtp_user):
        return SmtpTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )
    return DevTransport()


class EmailService:
    """Templated transactional mail on top of a single transport.

    Every ``send_*`` method returns the transport's confirmation id and lets
    :class:`MailDeliveryError` propagate; callers decide whether a failure is
    fatal.
    """

    def __init__(
        self,
        transport: MailTransport,
        *,
        from_email: Optional[str] = None,
        from_name: str = "EOTY Platform",
        frontend_url: str = "http://localhost:3000",
        otp_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.transport = transport
        self.from_email = from_email or "no-reply@eoty.local"
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.otp_ttl_minutes = otp_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            build_transport(settings),
            from_email=settings.email_from_address or settings.smtp_user,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
            otp_ttl_minutes=settings.otp_ttl_minutes,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
            verification_ttl_hours=settings.verification_token_ttl_hours,
        )

    @property
    def is_dev_mode(self) -> bool:
        return isinstance(self.transport, DevTransport)

    def reset_link(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={token}"

    def verification_link(self, token: str) -> str:
        return f"{self.frontend_url}/verify-email?token={token}"

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> str:
        message = OutgoingMail(to=to, subject=subject, html=html, text=text)
        confirmation = self.transport.deliver(
            message, sender=f"{self.from_name} <{self.from_email}>"
        )
        logger.info(
            "email_sent",
            to=redact_email(to),
            subject=subject,
            transport=self.transport.name,
        )
        return confirmation

    def send_two_factor_code(self, to_email: str, code: str, first_name: str = "") -> str:
        subject = "Your EOTY Platform Verification Code"
        greeting = f"Hello {first_name}," if first_name else "Hello,"
        html = _page(
            f"""        <h1>Your verification code</h1>
        <p>{greeting}</p>
        <p>Use the code below to finish signing in:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {self.otp_ttl_minutes} minutes.</p>
        <p>If you didn't try to sign in, please change your password.</p>"""
        )
        text = f"""{greeting}

Your EOTY Platform verification code is: {code}

This code will expire in {self.otp_ttl_minutes} minutes.

If you didn't try to sign in, please change your password.
"""
        return self.send(to_email, subject, html, text)

    def send_registration_verification(
        self, to_email: str, *, code: str, token: str, first_name: str = ""
    ) -> str:
        """Single onboarding mail carrying both the OTP and the verification link."""
        subject = "EOTY Platform Account Verification"
        link = self.verification_link(token)
        greeting = f"Welcome, {first_name}!" if first_name else "Welcome!"
        html = _page(
            f"""        <h1>{greeting}</h1>
        <p>Thanks for creating an EOTY Platform account. Your sign-in verification code is:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {self.otp_ttl_minutes} minutes.</p>
        <p>Please also confirm your email address:</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">Verify Email</a>
        </p>
        <p>This link will expire in {self.verification_ttl_hours} hours.</p>
        <p>If the button doesn't work, copy and paste this URL: {link}</p>"""
        )
        text = f"""{greeting}

Your sign-in verification code is: {code}
This code will expire in {self.otp_ttl_minutes} minutes.

Confirm your email address:
{link}

This link will expire in {self.verification_ttl_hours} hours.
"""
        return self.send(to_email, subject, html, text)

    def send_verification_link(self, to_email: str, token: str, first_name: str = "") -> str:
        subject = "Verify Your EOTY Platform Account"
        link = self.verification_link(token)
        html = _page(
            f"""        <h1>Verify your email</h1>
        <p>Hello {first_name or 'there'}, please confirm your email address:</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">Verify Email</a>
        </p>
        <p>This link will expire in {self.verification_ttl_hours} hours.</p>
        <p>If the button doesn't work, copy and paste this URL: {link}</p>"""
        )
        text = f"""Verify your email

Open this link to confirm your email address:
{link}

This link will expire in {self.verification_ttl_hours} hours.
"""
        return self.send(to_email, subject, html, text)

    def send_password_reset(self, to_email: str, token: str, first_name: str = "") -> str:
        subject = "Reset Your EOTY Platform Password"
        link = self.reset_link(token)
        html = _page(
            f"""        <h1>Reset your password</h1>
        <p>Hello {first_name or 'there'}, we received a request to reset your password:</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">Reset Password</a>
        </p>
        <p>This link will expire in {self.reset_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, copy and paste this URL: {link}</p>"""
        )
        text = f"""Reset your password

Open this link to choose a new password:
{link}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        return self.send(to_email, subject, html, text)

    def send_welcome(self, to_email: str, first_name: str = "") -> str:
        subject = "Welcome to EOTY Platform!"
        html = _page(
            f"""        <h1>Welcome to EOTY Platform!</h1>
        <p>Hello {first_name or 'there'}, your email address is verified and your account is ready.</p>
        <p style="margin: 30px 0;">
            <a href="{self.frontend_url}/login" class="button">Sign In</a>
        </p>"""
        )
        text = f"""Welcome to EOTY Platform!

Your email address is verified and your account is ready.
Sign in at {self.frontend_url}/login
"""
        return self.send(to_email, subject, html, text)
