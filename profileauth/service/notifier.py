from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Mapping, Optional, Protocol

import httpx

from profileauth.logging import get_logger, redact_target
from profileauth.storage.models import Channel, OTPPurpose

logger = get_logger(__name__)


class NotifierUnavailable(Exception):
    """The channel could not accept the message."""

    def __init__(self, channel: Channel | str, reason: str) -> None:
        super().__init__(f"{Channel(channel).value} notifier unavailable: {reason}")
        self.channel = Channel(channel)
        self.reason = reason


@dataclass(frozen=True)
class NotificationPayload:
    subject: str
    text: str
    html: Optional[str] = None


class Notifier(Protocol):
    async def send(
        self, channel: Channel, target: str, payload: NotificationPayload
    ) -> None: ...


_PURPOSE_SUBJECTS = {
    OTPPurpose.VERIFY_EMAIL: "Verify your email address",
    OTPPurpose.VERIFY_PHONE: "Verify your phone number",
    OTPPurpose.RESET_PASSWORD: "Reset your password",
    OTPPurpose.LOGIN_CHALLENGE: "Your sign-in code",
}


def render_otp_message(
    purpose: OTPPurpose, code: str, *, ttl_minutes: int, brand: str = "ProfileAuth"
) -> NotificationPayload:
    subject = f"{brand}: {_PURPOSE_SUBJECTS[OTPPurpose(purpose)]}"
    text = (
        f"Your {brand} code is {code}. It expires in {ttl_minutes} minutes.\n"
        "If you did not request this code you can ignore this message."
    )
    html = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;">
  <p>Your {brand} code is:</p>
  <p style="font-size: 28px; letter-spacing: 6px;"><strong>{code}</strong></p>
  <p>It expires in {ttl_minutes} minutes.</p>
  <p style="color: #52606d;">If you did not request this code you can ignore this email.</p>
</body>
</html>
"""
    return NotificationPayload(subject=subject, text=text, html=html)


class EmailNotifier:
    """SMTP delivery for the email channel.

    Supports STARTTLS and implicit TLS. The blocking SMTP exchange runs in a worker
    thread and is bounded by ``timeout``.
    """

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "ProfileAuth",
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

    async def send(
        self, channel: Channel, target: str, payload: NotificationPayload
    ) -> None:
        if Channel(channel) != Channel.EMAIL:
            raise NotifierUnavailable(channel, "email notifier only delivers email")
        await asyncio.to_thread(self._send_email, target, payload)

    def _build_message(self, to_email: str, payload: NotificationPayload) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = payload.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(payload.text, "plain"))
        if payload.html:
            msg.attach(MIMEText(payload.html, "html"))
        return msg

    def _send_email(self, to_email: str, payload: NotificationPayload) -> None:
        if not self.from_email:
            raise NotifierUnavailable(Channel.EMAIL, "sender address not configured")
        msg = self._build_message(to_email, payload)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_target(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
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
                host=self.smtp_host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            raise NotifierUnavailable(Channel.EMAIL, "smtp authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_target(to_email), error=str(e))
            raise NotifierUnavailable(Channel.EMAIL, "recipient refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_target(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise NotifierUnavailable(Channel.EMAIL, type(e).__name__) from e
        except (ssl.SSLError, OSError) as e:
            # Covers connection refused and timeouts
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise NotifierUnavailable(Channel.EMAIL, "smtp connection failed") from e
        logger.info("email_sent", to=redact_target(to_email), subject=payload.subject)


class WebhookNotifier:
    """Hand SMS / WhatsApp messages to a delivery gateway over HTTP."""

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def send(
        self, channel: Channel, target: str, payload: NotificationPayload
    ) -> None:
        channel = Channel(channel)
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {"channel": channel.value, "to": target, "message": payload.text}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(self.url, json=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "notifier_webhook_http_error",
                channel=channel.value,
                status_code=e.response.status_code,
            )
            raise NotifierUnavailable(
                channel, f"gateway returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "notifier_webhook_error",
                channel=channel.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise NotifierUnavailable(channel, type(e).__name__) from e
        logger.info("notifier_webhook_sent", channel=channel.value, to=redact_target(target))


class ChannelRouter:
    """Dispatch each channel to the notifier configured for it."""

    def __init__(self, routes: Mapping[Channel, Notifier]) -> None:
        self.routes = {Channel(ch): notifier for ch, notifier in routes.items()}

    async def send(
        self, channel: Channel, target: str, payload: NotificationPayload
    ) -> None:
        notifier = self.routes.get(Channel(channel))
        if notifier is None:
            raise NotifierUnavailable(channel, "no notifier configured")
        await notifier.send(channel, target, payload)


class LoggingNotifier:
    """Development notifier: logs the message instead of sending it."""

    async def send(
        self, channel: Channel, target: str, payload: NotificationPayload
    ) -> None:
        logger.info(
            "notifier_dev_mode",
            channel=Channel(channel).value,
            to=redact_target(target),
            subject=payload.subject,
        )
