"""Entry point for the ticket watcher."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date as date_type
from typing import List, Optional

import structlog
import uvicorn

from .api import create_app, resolve_party
from .client import MonitorClient, Watcher
from .config import Settings
from .models import CheckResult
from .notifier import build_notifier


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog + stdlib logging."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


LOGGER = structlog.get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Watch a ticketing site for open booking dates.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the caching check server with its background sweep.")
    serve.add_argument("--host", help="Override TICKET_WATCH_HOST.")
    serve.add_argument("--port", type=int, help="Override TICKET_WATCH_PORT / PORT.")
    serve.add_argument("--no-warmup", action="store_true", help="Skip seeding the cache at start-up.")

    watch = commands.add_parser("watch", help="Poll a date range from the terminal.")
    watch.add_argument("--start", required=True, help="First date, YYYY-MM-DD.")
    watch.add_argument("--end", required=True, help="Last date, YYYY-MM-DD (inclusive).")
    watch.add_argument("--party-size", type=int, default=None, help="Headcount (default 1).")
    watch.add_argument("--adults", type=int, default=None)
    watch.add_argument("--children", type=int, default=None)
    watch.add_argument("--server", help="Override TICKET_WATCH_SERVER_URL.")
    watch.add_argument("--once", action="store_true", help="Run a single silent cycle and exit.")
    return parser.parse_args(argv)


def print_result(result: CheckResult) -> None:
    tickets = f" ({result.tickets_left} left)" if result.tickets_left is not None else ""
    line = f"{result.date_str}  {result.status.value:<12} {result.message}{tickets}"
    if result.is_actionable and result.url:
        line += f"  -> {result.url}"
    print(line, flush=True)


async def watch(settings: Settings, args: argparse.Namespace) -> None:
    """Run the client board until interrupted."""
    try:
        start = date_type.fromisoformat(args.start)
        end = date_type.fromisoformat(args.end)
    except ValueError as exc:
        raise SystemExit(f"Invalid date: {exc}") from exc
    try:
        party = resolve_party(args.party_size, args.adults, args.children)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    async with MonitorClient(settings, server_url=args.server) as client:
        watcher = Watcher(
            client,
            build_notifier(settings, include_log=True),
            poll_seconds=settings.client_poll_seconds,
            pause_seconds=settings.request_pause_seconds,
            on_update=print_result,
        )
        await watcher.configure(start, end, party)
        if args.once:
            return
        watcher.start_monitoring()
        try:
            await asyncio.Event().wait()
        finally:
            await watcher.stop_monitoring()


def cli(argv: Optional[List[str]] = None) -> None:
    """Console script entrypoint."""
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        settings = Settings()
    except Exception as exc:  # pragma: no cover - startup validation
        LOGGER.exception("settings.error", error=str(exc))
        raise SystemExit(2) from exc

    if args.command == "serve":
        if args.no_warmup:
            settings = settings.model_copy(update={"warmup_enabled": False})
        host = args.host or settings.host
        port = args.port or settings.port
        LOGGER.info("server.start", host=host, port=port, variant=settings.variant.value)
        uvicorn.run(create_app(settings), host=host, port=port, log_level="debug" if args.debug else "info")
        return

    try:
        asyncio.run(watch(settings, args))
    except KeyboardInterrupt:
        LOGGER.info("watch.stopped")


if __name__ == "__main__":  # pragma: no cover
    cli()
