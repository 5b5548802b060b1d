"""Tests for notification dispatch and its channels."""

from __future__ import annotations

import smtplib
from typing import List

import httpx
import pytest
from pydantic import SecretStr
from tenacity import wait_none

from conftest import RecordingChannel, make_result
from ticket_watch.errors import ConfigurationError, NotificationError
from ticket_watch.models import AvailabilityAlert, AvailabilityStatus
from ticket_watch.notifier import (
    EmailChannel,
    LogChannel,
    NotifierDispatch,
    TelegramChannel,
    build_channels,
    format_alert,
    send_test_email,
)

AVAILABLE = AvailabilityStatus.AVAILABLE
SOLD_OUT = AvailabilityStatus.SOLD_OUT


async def run_sequence(notifier: NotifierDispatch, key, statuses) -> List[bool]:
    flags: List[bool] = []
    flag = False
    for status in statuses:
        flag = await notifier.evaluate(make_result(key, status), flag)
        flags.append(flag)
    return flags


class TestNotifierDispatch:
    @pytest.mark.asyncio
    async def test_alerts_once_per_transition(self, key) -> None:
        channel = RecordingChannel()
        notifier = NotifierDispatch([channel])

        flags = await run_sequence(notifier, key, [AVAILABLE, AVAILABLE, SOLD_OUT, AVAILABLE])

        assert len(channel.alerts) == 2
        assert flags == [True, True, False, True]
        assert notifier.sent_count == 2

    @pytest.mark.asyncio
    async def test_limited_high_is_actionable_but_limited_low_is_not(self, key) -> None:
        channel = RecordingChannel()
        notifier = NotifierDispatch([channel])

        await run_sequence(notifier, key, [AvailabilityStatus.LIMITED_LOW, AvailabilityStatus.LIMITED_HIGH])

        assert [alert.status for alert in channel.alerts] == [AvailabilityStatus.LIMITED_HIGH]

    @pytest.mark.asyncio
    async def test_unknown_and_error_rearm_silently(self, key) -> None:
        channel = RecordingChannel()
        notifier = NotifierDispatch([channel])

        flags = await run_sequence(
            notifier, key, [AVAILABLE, AvailabilityStatus.UNKNOWN, AVAILABLE, AvailabilityStatus.ERROR]
        )

        assert flags == [True, False, True, False]
        assert len(channel.alerts) == 2

    @pytest.mark.asyncio
    async def test_failed_send_stays_armed_by_default(self, key) -> None:
        channel = RecordingChannel(fail=True)
        notifier = NotifierDispatch([channel])

        flags = await run_sequence(notifier, key, [AVAILABLE, AVAILABLE])

        assert flags == [False, False]
        assert channel.attempts == 2
        assert notifier.sent_count == 0

    @pytest.mark.asyncio
    async def test_failed_send_can_count_as_notified(self, key) -> None:
        channel = RecordingChannel(fail=True)
        notifier = NotifierDispatch([channel], rearm_on_failed_send=False)

        flags = await run_sequence(notifier, key, [AVAILABLE, AVAILABLE])

        assert flags == [True, True]
        assert channel.attempts == 1

    @pytest.mark.asyncio
    async def test_one_working_channel_is_enough(self, key) -> None:
        broken, working = RecordingChannel(fail=True), RecordingChannel()
        notifier = NotifierDispatch([broken, working])

        assert await notifier.evaluate(make_result(key, AVAILABLE), False) is True
        assert len(working.alerts) == 1

    @pytest.mark.asyncio
    async def test_unexpected_channel_crash_is_contained(self, key) -> None:
        class Crashing(RecordingChannel):
            async def send(self, alert: AvailabilityAlert) -> None:
                raise RuntimeError("boom")

        notifier = NotifierDispatch([Crashing()])
        assert await notifier.evaluate(make_result(key, AVAILABLE), False) is False


class FakeSMTP:
    """Stands in for smtplib.SMTP, recording what it was asked to do."""

    def __init__(self, log: list, fail_times: int = 0) -> None:
        self.log = log
        self.fail_times = fail_times

    def __call__(self, host, port, timeout=None) -> "FakeSMTP":
        self.log.append(("connect", host, port))
        if self.fail_times:
            self.fail_times -= 1
            raise smtplib.SMTPServerDisconnected("dropped")
        return self

    def __enter__(self) -> "FakeSMTP":
        return self

    def __exit__(self, *exc) -> bool:
        return False

    def starttls(self) -> None:
        self.log.append(("starttls",))

    def login(self, user, password) -> None:
        self.log.append(("login", user, password))

    def send_message(self, message) -> None:
        self.log.append(("send", message["To"], message["Subject"]))


@pytest.fixture
def email_settings(settings):
    return settings.model_copy(
        update={
            "notify_email": "me@example.com",
            "smtp_user": "sender@example.com",
            "smtp_password": SecretStr("app-password"),
            "smtp_host": "smtp.example.com",
        }
    )


class TestEmailChannel:
    @pytest.mark.asyncio
    async def test_sends_alert_over_starttls(self, email_settings, key) -> None:
        log: list = []
        channel = EmailChannel(email_settings, smtp_factory=FakeSMTP(log), retry_wait=wait_none())

        await channel.send(AvailabilityAlert.from_result(make_result(key, AVAILABLE, message="Available! Book Now!")))

        assert log[0] == ("connect", "smtp.example.com", 587)
        assert ("starttls",) in log
        assert ("login", "sender@example.com", "app-password") in log
        assert log[-1][0] == "send"
        assert log[-1][1] == "me@example.com"
        assert "12/25/2025" in log[-1][2]

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, email_settings) -> None:
        log: list = []
        channel = EmailChannel(email_settings, smtp_factory=FakeSMTP(log, fail_times=2), retry_wait=wait_none())

        await channel.send_message("subject", "body")

        assert [entry[0] for entry in log].count("connect") == 3
        assert log[-1][0] == "send"

    @pytest.mark.asyncio
    async def test_gives_up_with_notification_error(self, email_settings) -> None:
        log: list = []
        channel = EmailChannel(email_settings, smtp_factory=FakeSMTP(log, fail_times=5), retry_wait=wait_none())

        with pytest.raises(NotificationError, match="email"):
            await channel.send_message("subject", "body")
        assert len(log) == 3

    def test_missing_credentials(self, settings) -> None:
        with pytest.raises(ConfigurationError):
            EmailChannel(settings)

    @pytest.mark.asyncio
    async def test_send_test_email_returns_recipient(self, email_settings) -> None:
        log: list = []
        channel = EmailChannel(email_settings, smtp_factory=FakeSMTP(log), retry_wait=wait_none())
        assert await send_test_email(email_settings, channel) == "me@example.com"
        assert log[-1] == ("send", "me@example.com", "Ticket Watch - Test Email")


class TestTelegramChannel:
    @pytest.fixture
    def telegram_settings(self, settings):
        return settings.model_copy(
            update={"telegram_bot_token": SecretStr("123:abc"), "telegram_chat_id": "42"}
        )

    @pytest.mark.asyncio
    async def test_posts_message(self, telegram_settings, key) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        channel = TelegramChannel(telegram_settings, transport=httpx.MockTransport(handler))
        await channel.send(AvailabilityAlert.from_result(make_result(key, AVAILABLE)))

        assert seen[0].url.path == "/bot123:abc/sendMessage"
        assert b'"chat_id":"42"' in seen[0].content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_rejected_message_raises(self, telegram_settings, key) -> None:
        channel = TelegramChannel(
            telegram_settings,
            transport=httpx.MockTransport(lambda request: httpx.Response(401, text="Unauthorized")),
        )
        with pytest.raises(NotificationError, match="401"):
            await channel.send(AvailabilityAlert.from_result(make_result(key, AVAILABLE)))


def test_unconfigured_settings_fall_back_to_log_channel(settings) -> None:
    channels = build_channels(settings)
    assert len(channels) == 1
    assert isinstance(channels[0], LogChannel)


def test_alert_text_carries_date_status_and_link(key) -> None:
    alert = AvailabilityAlert.from_result(make_result(key, AVAILABLE, message="Available! Book Now!"))
    title, body = format_alert(alert)
    assert title == "Tickets Found!"
    assert "Available! Book Now! for 12/25/2025" in body
    assert "AVAILABLE" in body
    assert "party of 2" in body
    assert "https://tickets.test/12/25/2025" in body


@pytest.mark.asyncio
async def test_transition_decides_without_sending(key) -> None:
    channel = RecordingChannel()
    notifier = NotifierDispatch([channel])

    notified, alert = notifier.transition(make_result(key, AVAILABLE), False)

    assert notified is True
    assert alert is not None and alert.date_str == "12/25/2025"
    assert channel.attempts == 0
    assert await notifier.settle(alert) is True
    assert channel.alerts == [alert]
    assert notifier.transition(make_result(key, SOLD_OUT), True) == (False, None)
