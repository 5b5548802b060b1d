"""FastAPI application exposing the cached availability check."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from . import __version__
from .cache import AvailabilityCache
from .checker import AvailabilityChecker
from .config import Settings
from .date_window import format_date_key, parse_date_key
from .errors import ConfigurationError, NotificationError
from .fetcher import Fetcher, build_fetcher
from .models import CheckKey, PartyComposition
from .notifier import NotifierDispatch, build_notifier, send_test_email
from .scheduler import RefreshScheduler

LOGGER = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything the routes need, owned by one application instance."""

    settings: Settings
    fetcher: Fetcher
    checker: AvailabilityChecker
    cache: AvailabilityCache
    notifier: NotifierDispatch
    scheduler: RefreshScheduler


def build_services(
    settings: Settings,
    *,
    fetcher: Optional[Fetcher] = None,
    notifier: Optional[NotifierDispatch] = None,
) -> Services:
    fetcher = fetcher or build_fetcher(settings)
    checker = AvailabilityChecker(settings, fetcher)
    cache = AvailabilityCache(checker.check, freshness_seconds=settings.freshness_seconds)
    notifier = notifier or build_notifier(settings)
    scheduler = RefreshScheduler(
        cache,
        notifier,
        interval_seconds=settings.freshness_seconds,
        pause_seconds=settings.request_pause_seconds,
    )
    return Services(settings, fetcher, checker, cache, notifier, scheduler)


def resolve_party(party_size: Optional[int], adults: Optional[int], children: Optional[int]) -> PartyComposition:
    """
    Query parameters to a party.

    ``adults``/``children`` win over ``partySize``; a missing half of the pair
    counts as zero. With nothing given the party is a single person.
    """
    if adults is not None or children is not None:
        party = PartyComposition(adults=adults or 0, children=children or 0)
    elif party_size is not None:
        party = PartyComposition.from_headcount(party_size)
    else:
        party = PartyComposition.from_headcount(1)
    if party.size < 1:
        raise ValueError("Party must include at least one person")
    return party


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    settings: Optional[Settings] = None,
    *,
    fetcher: Optional[Fetcher] = None,
    notifier: Optional[NotifierDispatch] = None,
    run_background: bool = True,
) -> FastAPI:
    """Build the app; the background sweep and warm-up run for its lifetime."""
    settings = settings or Settings()
    services = build_services(settings, fetcher=fetcher, notifier=notifier)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if run_background:
            services.scheduler.start()
            if settings.warmup_enabled:
                services.scheduler.warm_up(settings.warmup_keys())
        try:
            yield
        finally:
            await services.scheduler.stop()
            await services.fetcher.aclose()

    app = FastAPI(title="Ticket Watch", version=__version__, lifespan=lifespan)
    app.state.services = services

    @app.get("/check")
    async def check(
        date_str: Optional[str] = Query(default=None, alias="date"),
        party_size: Optional[int] = Query(default=None, alias="partySize"),
        adults: Optional[int] = Query(default=None),
        children: Optional[int] = Query(default=None),
    ):
        """Cached-or-fresh availability for one date and party."""
        if not date_str:
            return _error(400, "Date is required (MM/DD/YYYY)")
        try:
            day = parse_date_key(date_str)
        except ValueError:
            return _error(400, f"Invalid date: {date_str}. Expected MM/DD/YYYY")
        try:
            party = resolve_party(party_size, adults, children)
        except ValueError as exc:
            return _error(400, str(exc))

        key = CheckKey(date_str=format_date_key(day), party=party)
        result = await services.cache.get_or_refresh(key)
        return result.to_payload()

    @app.get("/test-email")
    async def test_email():
        """Send one diagnostic email and report the outcome."""
        if not settings.email_configured:
            return _error(503, "Email is not configured on the server")
        try:
            recipient = await send_test_email(settings)
        except ConfigurationError as exc:
            return _error(503, str(exc))
        except NotificationError as exc:
            LOGGER.error("api.test_email_failed", error=str(exc))
            return _error(500, f"Failed to send email: {exc}")
        return {"message": f"Test email sent to {recipient}"}

    @app.get("/health")
    async def health():
        """Sweep progress and every cached result, without fetching."""
        cache = services.cache
        results = [cache.peek(key) for key in cache.list_keys()]
        return {
            "status": "ok",
            "cached_keys": len(cache),
            "sweeps": services.scheduler.sweep_count,
            "last_sweep_at": services.scheduler.last_sweep_at,
            "background": services.scheduler.running,
            "notifications_sent": services.notifier.sent_count,
            "results": [result.to_payload() for result in results if result is not None],
        }

    return app
