"""Fetch-then-classify pipeline producing a :class:`CheckResult` per key."""

from __future__ import annotations

from typing import Callable, Optional

import structlog

from .classifier import PageClassifier, classifier_for
from .config import Settings
from .errors import FetchError
from .fetcher import Fetcher
from .models import AvailabilityStatus, CheckKey, CheckResult
from .utils import now_millis

LOGGER = structlog.get_logger(__name__)


class AvailabilityChecker:
    """Checks one key against the upstream site. Never raises for transport trouble."""

    def __init__(
        self,
        settings: Settings,
        fetcher: Fetcher,
        classifier: Optional[PageClassifier] = None,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self._settings = settings
        self._fetcher = fetcher
        self._classifier = classifier or classifier_for(settings.variant)
        self._clock = clock

    @property
    def fetcher(self) -> Fetcher:
        return self._fetcher

    async def check(self, key: CheckKey) -> CheckResult:
        url = self._settings.booking_url(key)
        try:
            raw_content = await self._fetcher.fetch(url)
        except FetchError as exc:
            LOGGER.error("check.fetch_failed", date=key.date_str, url=url, error=str(exc))
            return self.result_for(key, AvailabilityStatus.ERROR, str(exc) or "Server Error")

        outcome = self._classifier.classify(raw_content, key.party)
        LOGGER.info(
            "check.classified",
            date=key.date_str,
            party=key.party.size,
            status=outcome.status.value,
            tickets_left=outcome.tickets_left,
        )
        return self.result_for(key, outcome.status, outcome.message, outcome.tickets_left)

    __call__ = check

    def result_for(
        self,
        key: CheckKey,
        status: AvailabilityStatus,
        message: str,
        tickets_left: Optional[int] = None,
    ) -> CheckResult:
        return CheckResult(
            date_str=key.date_str,
            status=status,
            message=message,
            tickets_left=tickets_left,
            timestamp=self._clock(),
            url=self._settings.booking_url(key),
            adults=key.party.adults,
            children=key.party.children,
        )


def pending_result(key: CheckKey, *, timestamp: Optional[int] = None) -> CheckResult:
    """Placeholder shown while a key's first check is in flight."""
    return CheckResult(
        date_str=key.date_str,
        status=AvailabilityStatus.CHECKING,
        message="Loading data...",
        timestamp=timestamp if timestamp is not None else now_millis(),
        adults=key.party.adults,
        children=key.party.children,
    )
