"""Shared fixtures for the ticket watcher tests."""

from __future__ import annotations

from typing import List

import pytest

from ticket_watch.config import Settings
from ticket_watch.errors import NotificationError
from ticket_watch.models import AvailabilityAlert, CheckKey, CheckResult, PartyComposition
from ticket_watch.notifier import NotificationChannel

SOLD_OUT_PAGE = """
<html><body>
  <div class="status">SOLDOUT! Please choose another date!</div>
</body></html>
"""

AVAILABLE_PAGE = """
<html><body>
  <div class="status">Tickets available. Book Now!</div>
</body></html>
"""

LIMITED_PAGE = """
<html><body>
  <div class="status"><strong>Limited Availability!</strong>
    Book Now! {count} tickets left</div>
</body></html>
"""

UNRECOGNISED_PAGE = "<html><body><h1>Super Ambassador Package</h1></body></html>"


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class RecordingChannel(NotificationChannel):
    """Channel that remembers alerts and can be told to fail."""

    name = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.alerts: List[AvailabilityAlert] = []
        self.attempts = 0
        self.fail = fail

    async def send(self, alert: AvailabilityAlert) -> None:
        self.attempts += 1
        if self.fail:
            raise NotificationError(self.name, "mailbox unavailable")
        self.alerts.append(alert)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        warmup_enabled=False,
        request_pause_seconds=0,
        relay_url="https://relay.test/?",
        notify_email=None,
        smtp_user=None,
        smtp_password=None,
        telegram_bot_token=None,
        telegram_chat_id=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def party() -> PartyComposition:
    return PartyComposition.from_headcount(2)


@pytest.fixture
def key(party: PartyComposition) -> CheckKey:
    return CheckKey(date_str="12/25/2025", party=party)


def make_result(key: CheckKey, status, *, timestamp: int = 1, message: str = "") -> CheckResult:
    return CheckResult(
        date_str=key.date_str,
        status=status,
        message=message or status.value,
        timestamp=timestamp,
        url=f"https://tickets.test/{key.date_str}",
        adults=key.party.adults,
        children=key.party.children,
    )

