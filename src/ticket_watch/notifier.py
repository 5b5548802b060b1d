"""Notification channels and the once-per-transition dispatch state machine."""

from __future__ import annotations

import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Sequence, Tuple

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from .config import Settings
from .errors import ConfigurationError, NotificationError
from .models import AvailabilityAlert, CheckResult

LOGGER = structlog.get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 20.0


def format_alert(alert: AvailabilityAlert) -> tuple[str, str]:
    """Title and body shared by every channel."""
    title = "Tickets Found!"
    lines = [
        f"{alert.message} for {alert.date_str}",
        f"Status: {alert.status.value}",
        f"Party: {alert.party.describe()}",
    ]
    if alert.url:
        lines.append(f"Book now: {alert.url}")
    return title, "\n".join(lines)


class NotificationChannel(ABC):
    """Delivers an alert somewhere; raises :class:`NotificationError` on failure."""

    name = "channel"

    @abstractmethod
    async def send(self, alert: AvailabilityAlert) -> None:
        ...


class LogChannel(NotificationChannel):
    """Writes alerts to the log. Used when no other channel is configured."""

    name = "log"

    async def send(self, alert: AvailabilityAlert) -> None:
        title, body = format_alert(alert)
        LOGGER.warning("notification.alert", title=title, body=body, url=alert.url, date=alert.date_str)


class EmailChannel(NotificationChannel):
    """SMTP delivery with STARTTLS (or implicit TLS on port 465), retried with backoff."""

    name = "email"

    def __init__(
        self,
        settings: Settings,
        *,
        smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None,
        retry_wait: Optional[wait_base] = None,
        attempts: int = 3,
    ) -> None:
        if not settings.email_configured:
            raise ConfigurationError(
                "Email is not configured. Set TICKET_WATCH_NOTIFY_EMAIL, "
                "TICKET_WATCH_SMTP_USER and TICKET_WATCH_SMTP_PASSWORD."
            )
        self._settings = settings
        self._implicit_tls = settings.smtp_port == 465
        self._smtp_factory = smtp_factory or (smtplib.SMTP_SSL if self._implicit_tls else smtplib.SMTP)
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=8)
        self._attempts = attempts

    @property
    def recipient(self) -> str:
        return str(self._settings.notify_email)

    async def send(self, alert: AvailabilityAlert) -> None:
        title, body = format_alert(alert)
        subject = f"{title} {alert.date_str} - {alert.status.value}"
        await self.send_message(subject, body)

    async def send_message(self, subject: str, body: str) -> None:
        message = MIMEMultipart()
        message["From"] = str(self._settings.smtp_user)
        message["To"] = self.recipient
        message["Subject"] = subject
        message.attach(MIMEText(body, "plain"))

        try:
            async for attempt in AsyncRetrying(
                wait=self._retry_wait,
                stop=stop_after_attempt(self._attempts),
                retry=retry_if_exception_type((smtplib.SMTPException, OSError)),
                reraise=True,
            ):
                with attempt:
                    await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(self.name, str(exc) or exc.__class__.__name__) from exc
        LOGGER.info("email.sent", recipient=self.recipient, subject=subject)

    def _deliver(self, message: MIMEMultipart) -> None:
        password = self._settings.smtp_password.get_secret_value() if self._settings.smtp_password else ""
        with self._smtp_factory(self._settings.smtp_host, self._settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS) as server:
            if not self._implicit_tls:
                server.starttls()
            server.login(str(self._settings.smtp_user), password)
            server.send_message(message)


class TelegramChannel(NotificationChannel):
    """Posts alerts through the Telegram Bot API."""

    name = "telegram"

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        if not settings.telegram_configured:
            raise ConfigurationError("Telegram is not configured.")
        self._settings = settings
        self._transport = transport

    async def send(self, alert: AvailabilityAlert) -> None:
        title, body = format_alert(alert)
        payload = {
            "chat_id": self._settings.telegram_chat_id,
            "text": f"{title}\n{body}",
            "disable_web_page_preview": True,
        }
        url = f"{self._settings.telegram_api_endpoint}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise NotificationError(self.name, str(exc) or exc.__class__.__name__) from exc
        if response.is_success:
            LOGGER.info("telegram.send.success", date=alert.date_str)
            return
        LOGGER.error("telegram.send.failed", status_code=response.status_code, body=response.text)
        raise NotificationError(self.name, f"HTTP {response.status_code}: {response.text}")


def build_channels(settings: Settings, *, include_log: bool = False) -> list[NotificationChannel]:
    """Channels with complete credentials; falls back to logging alone."""
    channels: list[NotificationChannel] = []
    if settings.email_configured:
        channels.append(EmailChannel(settings))
    else:
        LOGGER.info("notifier.email_disabled", reason="credentials not configured")
    if settings.telegram_configured:
        channels.append(TelegramChannel(settings))
    if include_log or not channels:
        channels.append(LogChannel())
    return channels


class NotifierDispatch:
    """
    Per-key alert state machine.

    A key is alerted when it becomes actionable and was not already notified.
    Staying actionable stays silent; leaving the actionable set re-arms it.
    When every channel fails, ``rearm_on_failed_send`` decides whether the
    key stays armed (retry at the next check) or counts as notified.
    """

    def __init__(self, channels: Sequence[NotificationChannel], *, rearm_on_failed_send: bool = True) -> None:
        self._channels = list(channels)
        self._rearm_on_failed_send = rearm_on_failed_send
        self.sent_count = 0

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    def transition(self, result: CheckResult, previously_notified: bool) -> Tuple[bool, Optional[AvailabilityAlert]]:
        """
        Decide the new notified flag without sending anything.

        Returns the flag to store and, on a fresh transition into an
        actionable status, the alert that still has to go out through
        :meth:`settle`. The flag is already set for a pending alert so
        concurrent checks of the same key stay quiet.
        """
        if not result.is_actionable:
            if previously_notified:
                LOGGER.info("notifier.rearmed", date=result.date_str, status=result.status.value)
            return False, None
        if previously_notified:
            LOGGER.debug("notifier.suppressed", date=result.date_str, status=result.status.value)
            return True, None
        return True, AvailabilityAlert.from_result(result)

    async def settle(self, alert: AvailabilityAlert) -> bool:
        """Send a pending alert; returns whether the key should stay notified."""
        if await self.dispatch(alert):
            return True
        return not self._rearm_on_failed_send

    async def evaluate(self, result: CheckResult, previously_notified: bool) -> bool:
        """Apply the transition for ``result`` and return the new notified flag."""
        notified, alert = self.transition(result, previously_notified)
        if alert is None:
            return notified
        return await self.settle(alert)

    async def dispatch(self, alert: AvailabilityAlert) -> bool:
        """Send through every channel; true if at least one delivered."""
        delivered = False
        for channel in self._channels:
            try:
                await channel.send(alert)
            except NotificationError as exc:
                LOGGER.error("notifier.failed", channel=channel.name, date=alert.date_str, error=str(exc))
                continue
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("notifier.channel_crashed", channel=channel.name, error=str(exc))
                continue
            delivered = True
            LOGGER.info("notifier.sent", channel=channel.name, date=alert.date_str, status=alert.status.value)
        if delivered:
            self.sent_count += 1
        return delivered


def build_notifier(settings: Settings, *, include_log: bool = False) -> NotifierDispatch:
    return NotifierDispatch(
        build_channels(settings, include_log=include_log),
        rearm_on_failed_send=settings.rearm_on_failed_send,
    )


async def send_test_email(settings: Settings, channel: Optional[EmailChannel] = None) -> str:
    """Send one diagnostic email and return the recipient; raises on failure."""
    channel = channel or EmailChannel(settings)
    await channel.send_message(
        "Ticket Watch - Test Email",
        "This is a test email from Ticket Watch. Your email configuration is working correctly.",
    )
    return channel.recipient
