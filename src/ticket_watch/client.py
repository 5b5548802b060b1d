"""Consuming client: queries the server and falls back to checking upstream itself."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Callable, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from .checker import AvailabilityChecker, pending_result
from .config import Settings
from .date_window import DateLike
from .fetcher import build_fetcher
from .models import AvailabilityStatus, CheckKey, CheckResult, PartyComposition
from .notifier import NotifierDispatch
from .scheduler import SleepFn, keys_for_range, run_check_cycle
from .utils import now_millis

LOGGER = structlog.get_logger(__name__)


class ResultBoard:
    """Latest result per date, in range order, as the user would see it."""

    def __init__(self) -> None:
        self._results: Dict[str, CheckResult] = {}

    def reset(self, keys: List[CheckKey]) -> None:
        """Show every key as in flight until its first result lands."""
        timestamp = now_millis()
        self._results = {key.date_str: pending_result(key, timestamp=timestamp) for key in keys}

    def update(self, result: CheckResult) -> None:
        self._results[result.date_str] = result

    def get(self, date_str: str) -> Optional[CheckResult]:
        return self._results.get(date_str)

    def results(self) -> List[CheckResult]:
        return list(self._results.values())

    def __len__(self) -> int:
        return len(self._results)


class MonitorClient:
    """
    Checks a key through the server's ``/check`` endpoint.

    When the server cannot be reached, or does not expose ``/check``, the
    same fetch-and-classify pipeline runs locally through the public relay.
    The fallback keeps no cache of its own.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        server_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        fallback: Optional[AvailabilityChecker] = None,
    ) -> None:
        self._settings = settings
        self._http = httpx.AsyncClient(
            base_url=server_url or settings.server_url,
            timeout=settings.fetch_timeout_seconds + 5.0,
            transport=transport,
        )
        self._fallback = fallback or AvailabilityChecker(settings, build_fetcher(settings, relayed=True))
        self.fallback_count = 0

    async def __aenter__(self) -> "MonitorClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()
        await self._fallback.fetcher.aclose()

    async def check(self, key: CheckKey) -> CheckResult:
        params = {"date": key.date_str, "adults": key.party.adults, "children": key.party.children}
        try:
            response = await self._http.get("/check", params=params)
        except httpx.ConnectError as exc:
            LOGGER.warning("client.server_unreachable", date=key.date_str, error=str(exc))
            return await self._check_locally(key)
        except httpx.HTTPError as exc:
            LOGGER.error("client.request_failed", date=key.date_str, error=str(exc))
            return self._fallback.result_for(key, AvailabilityStatus.ERROR, str(exc) or "Connection Error")

        if response.status_code == 404:
            LOGGER.warning("client.endpoint_missing", date=key.date_str)
            return await self._check_locally(key)
        if not response.is_success:
            return self._fallback.result_for(key, AvailabilityStatus.ERROR, f"Server error: {response.status_code}")

        try:
            return CheckResult.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            LOGGER.error("client.bad_payload", date=key.date_str, error=str(exc))
            return self._fallback.result_for(key, AvailabilityStatus.ERROR, "Malformed server response")

    async def _check_locally(self, key: CheckKey) -> CheckResult:
        self.fallback_count += 1
        return await self._fallback.check(key)


class Watcher:
    """
    Keeps a :class:`ResultBoard` current for one date range and party.

    Changing the configuration runs a silent cycle straight away; turning
    monitoring on runs a notifying cycle immediately and then on a timer
    until monitoring is turned off.
    """

    def __init__(
        self,
        client: MonitorClient,
        notifier: NotifierDispatch,
        *,
        poll_seconds: float = 60.0,
        pause_seconds: float = 0.2,
        sleep: SleepFn = asyncio.sleep,
        on_update: Optional[Callable[[CheckResult], None]] = None,
    ) -> None:
        self._client = client
        self._notifier = notifier
        self._poll_seconds = poll_seconds
        self._pause_seconds = pause_seconds
        self._sleep = sleep
        self._on_update = on_update
        self._keys: List[CheckKey] = []
        self._notified: Dict[CheckKey, bool] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self.board = ResultBoard()
        self.last_check_at: Optional[int] = None

    @property
    def keys(self) -> List[CheckKey]:
        return list(self._keys)

    @property
    def monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def configure(self, start: DateLike, end: DateLike, party: PartyComposition) -> List[CheckResult]:
        """Switch to a new range/party and refresh it without alerts."""
        self._keys = keys_for_range(start, end, party)
        self._notified = {key: flag for key, flag in self._notified.items() if key in self._keys}
        self.board.reset(self._keys)
        return await self.run_cycle(notify=False)

    async def run_cycle(self, *, notify: bool = False) -> List[CheckResult]:
        self.last_check_at = now_millis()
        return await run_check_cycle(
            self._keys,
            self._check,
            notify=notify,
            on_result=self._record,
            pause_seconds=self._pause_seconds,
            sleep=self._sleep,
        )

    async def _check(self, key: CheckKey, notify: bool) -> CheckResult:
        result = await self._client.check(key)
        previously = self._notified.get(key, False)
        if notify:
            self._notified[key] = await self._notifier.evaluate(result, previously)
        elif not result.is_actionable:
            self._notified[key] = False
        return result

    def _record(self, result: CheckResult) -> None:
        self.board.update(result)
        if self._on_update is not None:
            self._on_update(result)

    def start_monitoring(self) -> None:
        if self.monitoring:
            return
        LOGGER.info("watcher.monitoring_on", dates=len(self._keys), poll_seconds=self._poll_seconds)
        self._monitor_task = asyncio.create_task(self._monitor_forever(), name="ticket-watch-monitor")

    async def stop_monitoring(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        LOGGER.info("watcher.monitoring_off")

    async def _monitor_forever(self) -> None:
        while True:
            try:
                await self.run_cycle(notify=True)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("watcher.cycle_failed", error=str(exc))
            await self._sleep(self._poll_seconds)
