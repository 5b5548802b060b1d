"""Foreground check cycles, the background sweep and the start-up warm-up."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from .cache import AvailabilityCache
from .date_window import DateLike, enumerate_dates
from .models import CheckKey, CheckResult, PartyComposition
from .notifier import NotifierDispatch
from .utils import now_millis

LOGGER = structlog.get_logger(__name__)

CycleCheck = Callable[[CheckKey, bool], Awaitable[CheckResult]]
ResultCallback = Callable[[CheckResult], None]
SleepFn = Callable[[float], Awaitable[None]]


def keys_for_range(start: DateLike, end: DateLike, party: PartyComposition) -> List[CheckKey]:
    return [CheckKey.for_date(day, party) for day in enumerate_dates(start, end)]


async def run_check_cycle(
    keys: Sequence[CheckKey],
    check: CycleCheck,
    *,
    notify: bool = False,
    on_result: Optional[ResultCallback] = None,
    pause_seconds: float = 0.2,
    sleep: SleepFn = asyncio.sleep,
) -> List[CheckResult]:
    """
    Check ``keys`` one at a time, pausing between requests.

    Each result is handed to ``on_result`` as soon as it arrives, so readers
    can see a partially updated set mid-cycle. ``notify`` is passed through
    to ``check`` untouched.
    """
    results: List[CheckResult] = []
    for index, key in enumerate(keys):
        result = await check(key, notify)
        results.append(result)
        if on_result is not None:
            on_result(result)
        if pause_seconds and index < len(keys) - 1:
            await sleep(pause_seconds)
    return results


class RefreshScheduler:
    """Owns the cache refresh regimes for the server process."""

    def __init__(
        self,
        cache: AvailabilityCache,
        notifier: NotifierDispatch,
        *,
        interval_seconds: Optional[float] = None,
        pause_seconds: float = 0.2,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self._cache = cache
        self._notifier = notifier
        self._interval_seconds = interval_seconds if interval_seconds is not None else cache.freshness_seconds
        self._pause_seconds = pause_seconds
        self._sleep = sleep
        self._clock = clock
        self._sweep_task: Optional[asyncio.Task] = None
        self._warmup_task: Optional[asyncio.Task] = None
        self.sweep_count = 0
        self.last_sweep_at: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def check(self, key: CheckKey, notify: bool = False) -> CheckResult:
        """Cache-backed check, evaluating the alert transition when ``notify`` is set."""
        notifier = self._notifier if notify else None
        return await self._cache.get_or_refresh(key, notifier=notifier)

    async def run_cycle(
        self,
        start: DateLike,
        end: DateLike,
        party: PartyComposition,
        *,
        notify: bool = False,
        on_result: Optional[ResultCallback] = None,
    ) -> List[CheckResult]:
        """Foreground pass over a configured date range."""
        keys = keys_for_range(start, end, party)
        LOGGER.info("cycle.start", dates=len(keys), party=party.size, notify=notify)
        return await run_check_cycle(
            keys,
            self.check,
            notify=notify,
            on_result=on_result,
            pause_seconds=self._pause_seconds,
            sleep=self._sleep,
        )

    async def sweep(self) -> int:
        """Re-fetch every cached key and evaluate its alert; returns keys refreshed."""
        keys = self._cache.list_keys()
        LOGGER.info("sweep.start", keys=len(keys))
        refreshed = 0
        for key in keys:
            try:
                entry = await self._cache.refresh(key, notifier=self._notifier)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("sweep.key_failed", date=key.date_str, party=key.party.size, error=str(exc))
                continue
            refreshed += 1
            LOGGER.info("sweep.refreshed", date=key.date_str, status=entry.result.status.value, notified=entry.notified)
        self.sweep_count += 1
        self.last_sweep_at = self._clock()
        LOGGER.info("sweep.complete", refreshed=refreshed, failed=len(keys) - refreshed)
        return refreshed

    async def _sweep_forever(self) -> None:
        while True:
            await self._sleep(self._interval_seconds)
            try:
                await self.sweep()
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("sweep.failed", error=str(exc))

    def start(self) -> None:
        """Begin the recurring background sweep."""
        if self.running:
            return
        LOGGER.info("scheduler.start", interval_seconds=self._interval_seconds)
        self._sweep_task = asyncio.create_task(self._sweep_forever(), name="ticket-watch-sweep")

    def warm_up(self, keys: Sequence[CheckKey]) -> asyncio.Task:
        """Seed the cache for ``keys`` in the background without notifying."""
        previous = self._warmup_task
        if previous is not None and not previous.done():
            LOGGER.info("warmup.superseded")
            previous.cancel()
        LOGGER.info("warmup.start", keys=len(keys))

        async def _warm() -> None:
            results = await run_check_cycle(
                list(keys),
                self.check,
                notify=False,
                pause_seconds=self._pause_seconds,
                sleep=self._sleep,
            )
            LOGGER.info("warmup.complete", loaded=len(results))

        self._warmup_task = asyncio.create_task(_warm(), name="ticket-watch-warmup")
        return self._warmup_task

    async def stop(self) -> None:
        """Cancel the sweep timer and any warm-up still running."""
        for task in (self._sweep_task, self._warmup_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._sweep_task = None
        self._warmup_task = None
        LOGGER.info("scheduler.stopped")
