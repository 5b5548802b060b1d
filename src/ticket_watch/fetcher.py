"""HTTP retrieval of upstream booking pages, direct or through a CORS relay."""

from __future__ import annotations

import json
from abc import ABC
from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from .config import Settings
from .errors import FetchError

LOGGER = structlog.get_logger(__name__)

DEFAULT_ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


class Fetcher(ABC):
    """Retrieves a page body; every transport failure surfaces as :class:`FetchError`."""

    mode = "abstract"

    def __init__(
        self,
        *,
        user_agent: str,
        timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._client = httpx.AsyncClient(
            headers={
                "User-Agent": user_agent,
                "Accept": DEFAULT_ACCEPT_HEADER,
                "Accept-Language": "en-US,en;q=0.9",
            },
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "Fetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def request_url(self, url: str) -> str:
        return url

    async def fetch(self, url: str) -> str:
        """Return the raw content behind ``url``."""
        target = self.request_url(url)
        LOGGER.debug("fetch.start", url=url, mode=self.mode)
        try:
            response = await self._client.get(target)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            LOGGER.warning("fetch.timeout", url=url, timeout=self._timeout_seconds)
            raise FetchError(f"Timed out after {self._timeout_seconds:g}s", url=url) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            LOGGER.warning("fetch.bad_status", url=url, status_code=status_code)
            raise FetchError(f"Upstream returned HTTP {status_code}", url=url, status_code=status_code) from exc
        except httpx.HTTPError as exc:
            LOGGER.warning("fetch.failed", url=url, error=str(exc))
            raise FetchError(str(exc) or exc.__class__.__name__, url=url) from exc
        return self.unwrap(response, url)

    def unwrap(self, response: httpx.Response, url: str) -> str:
        return response.text


class DirectFetcher(Fetcher):
    """Server-side retrieval straight from the upstream site."""

    mode = "direct"


class RelayFetcher(Fetcher):
    """
    Retrieval through a public CORS-bypass relay.

    Relays answer either with the page itself or with a JSON envelope whose
    ``contents`` field holds the page; both shapes are accepted.
    """

    mode = "relay"

    def __init__(self, relay_url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._relay_url = relay_url

    def request_url(self, url: str) -> str:
        return f"{self._relay_url}{quote(url, safe='')}"

    def unwrap(self, response: httpx.Response, url: str) -> str:
        content_type = response.headers.get("content-type", "").lower()
        body = response.text
        looks_like_json = "json" in content_type or body.lstrip().startswith("{")
        if not looks_like_json:
            return body

        try:
            envelope = json.loads(body)
        except json.JSONDecodeError as exc:
            if "json" in content_type:
                raise FetchError("Malformed relay envelope: invalid JSON", url=url) from exc
            return body

        if not isinstance(envelope, dict) or not isinstance(envelope.get("contents"), str):
            raise FetchError("Malformed relay envelope: missing 'contents'", url=url)

        status = envelope.get("status")
        if isinstance(status, dict):
            http_code = status.get("http_code")
            if isinstance(http_code, int) and http_code >= 400:
                raise FetchError(f"Upstream returned HTTP {http_code}", url=url, status_code=http_code)

        return envelope["contents"]


def build_fetcher(
    settings: Settings,
    *,
    relayed: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Fetcher:
    """Pick the retrieval mode; both share the :class:`Fetcher` contract."""
    options = {
        "user_agent": settings.user_agent,
        "timeout_seconds": settings.fetch_timeout_seconds,
        "transport": transport,
    }
    if relayed:
        return RelayFetcher(settings.relay_url, **options)
    return DirectFetcher(**options)
