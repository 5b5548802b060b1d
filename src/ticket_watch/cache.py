"""In-memory availability cache with a freshness window and per-key fetch guard."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from .models import AvailabilityAlert, CacheEntry, CheckKey, CheckResult
from .notifier import NotifierDispatch
from .utils import now_millis

LOGGER = structlog.get_logger(__name__)

CheckFn = Callable[[CheckKey], Awaitable[CheckResult]]


class AvailabilityCache:
    """
    Process-wide store of the latest result per :class:`CheckKey`.

    Entries are never evicted; staleness is bounded by whoever refreshes them.
    A per-key lock spans the freshness check, the fetch, the write and the
    alert transition, so at most one fetch per key is ever in flight. Alert
    delivery runs after the lock is released.
    """

    def __init__(
        self,
        check: CheckFn,
        *,
        freshness_seconds: float,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self._check = check
        self._freshness_ms = int(freshness_seconds * 1000)
        self._clock = clock
        self._entries: Dict[CheckKey, CacheEntry] = {}
        self._locks: Dict[CheckKey, asyncio.Lock] = {}

    @property
    def freshness_seconds(self) -> float:
        return self._freshness_ms / 1000

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _lock_for(self, key: CheckKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def is_in_flight(self, key: CheckKey) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    async def get_or_refresh(
        self,
        key: CheckKey,
        freshness_seconds: Optional[float] = None,
        *,
        notifier: Optional[NotifierDispatch] = None,
    ) -> CheckResult:
        """Cached result while fresh, otherwise fetch, store and return a new one."""
        window_ms = self._freshness_ms if freshness_seconds is None else int(freshness_seconds * 1000)
        async with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry.fetched_at < window_ms:
                LOGGER.debug("cache.hit", date=key.date_str, party=key.party.size)
            else:
                LOGGER.info("cache.miss", date=key.date_str, party=key.party.size, stale=entry is not None)
                entry = await self._fetch_and_store(key)
            alert = self._transition(entry, notifier)
        if alert is not None:
            await self._settle(key, alert, notifier)
        return entry.result

    async def refresh(self, key: CheckKey, *, notifier: Optional[NotifierDispatch] = None) -> CacheEntry:
        """
        Re-fetch ``key`` regardless of age.

        With a ``notifier`` the alert transition is decided under the key's
        lock and any resulting alert is sent once the lock is free. A failed
        send re-arms the key only if the entry still carries that alert.
        """
        async with self._lock_for(key):
            entry = await self._fetch_and_store(key)
            alert = self._transition(entry, notifier)
        if alert is not None:
            await self._settle(key, alert, notifier)
        return entry

    @staticmethod
    def _transition(entry: CacheEntry, notifier: Optional[NotifierDispatch]) -> Optional[AvailabilityAlert]:
        if notifier is None:
            return None
        entry.notified, alert = notifier.transition(entry.result, entry.notified)
        if alert is not None:
            entry.alert = alert
        elif not entry.notified:
            entry.alert = None
        return alert

    async def _settle(self, key: CheckKey, alert: AvailabilityAlert, notifier: NotifierDispatch) -> None:
        if await notifier.settle(alert):
            return
        current = self._entries.get(key)
        if current is not None and current.alert is alert:
            current.notified = False
            current.alert = None
            LOGGER.info("cache.alert_rearmed", date=key.date_str)

    async def _fetch_and_store(self, key: CheckKey) -> CacheEntry:
        result = await self._check(key)
        previous = self._entries.get(key)
        # The flag only survives while the key stays actionable.
        notified = bool(previous and previous.notified and result.is_actionable)
        entry = CacheEntry(
            result=result,
            fetched_at=self._clock(),
            party=key.party,
            notified=notified,
            alert=previous.alert if notified else None,
        )
        self._entries[key] = entry
        LOGGER.info("cache.stored", date=key.date_str, status=result.status.value, notified=notified)
        return entry

    def peek(self, key: CheckKey) -> Optional[CheckResult]:
        """Stored result without triggering a fetch."""
        entry = self._entries.get(key)
        return entry.result if entry else None

    def entry(self, key: CheckKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def list_keys(self) -> List[CheckKey]:
        """Snapshot of every key asked for so far, in insertion order."""
        return list(self._entries)
