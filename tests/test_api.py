"""Tests for the HTTP interface."""

from __future__ import annotations

from typing import List

import httpx
import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from conftest import AVAILABLE_PAGE, RecordingChannel
from ticket_watch import api
from ticket_watch.api import create_app, resolve_party
from ticket_watch.errors import NotificationError
from ticket_watch.fetcher import DirectFetcher
from ticket_watch.notifier import NotifierDispatch


class Upstream:
    def __init__(self, body: str = AVAILABLE_PAGE) -> None:
        self.body = body
        self.requests: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        return httpx.Response(200, text=self.body)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


def make_client(settings, upstream: Upstream) -> TestClient:
    fetcher = DirectFetcher(user_agent="test", timeout_seconds=5, transport=httpx.MockTransport(upstream))
    app = create_app(settings, fetcher=fetcher, notifier=NotifierDispatch([RecordingChannel()]), run_background=False)
    return TestClient(app)


def test_check_returns_result_and_caches(settings, upstream) -> None:
    with make_client(settings, upstream) as client:
        first = client.get("/check", params={"date": "12/25/2025", "partySize": 2})
        second = client.get("/check", params={"date": "12/25/2025", "partySize": 2})

    assert first.status_code == 200
    body = first.json()
    assert body["dateStr"] == "12/25/2025"
    assert body["status"] == "AVAILABLE"
    assert body["message"] == "Available! Book Now!"
    assert body["adults"] == 2 and body["children"] == 0
    assert body["url"].endswith("12/25/2025")
    assert second.json() == body
    assert len(upstream.requests) == 1


def test_limited_low_for_requested_party(settings) -> None:
    upstream = Upstream("<body>Limited Availability! Book Now! 3 tickets left</body>")
    with make_client(settings, upstream) as client:
        body = client.get("/check", params={"date": "12/26/2025", "partySize": 6}).json()

    assert body["status"] == "LIMITED_LOW"
    assert body["ticketsLeft"] == 3


def test_party_compositions_are_cached_separately(settings, upstream) -> None:
    with make_client(settings, upstream) as client:
        client.get("/check", params={"date": "12/25/2025", "adults": 2, "children": 1})
        client.get("/check", params={"date": "12/25/2025", "adults": 2})
        client.get("/check", params={"date": "12/25/2025", "adults": 2, "children": 1})

    assert len(upstream.requests) == 2


def test_date_is_required(settings, upstream) -> None:
    with make_client(settings, upstream) as client:
        response = client.get("/check")
    assert response.status_code == 400
    assert "Date is required" in response.json()["error"]


@pytest.mark.parametrize("value", ["2025-12-25", "25/12/2025", "tomorrow"])
def test_bad_date_is_rejected(settings, upstream, value: str) -> None:
    with make_client(settings, upstream) as client:
        response = client.get("/check", params={"date": value})
    assert response.status_code == 400
    assert upstream.requests == []


def test_empty_party_is_rejected(settings, upstream) -> None:
    with make_client(settings, upstream) as client:
        response = client.get("/check", params={"date": "12/25/2025", "adults": 0, "children": 0})
    assert response.status_code == 400


def test_upstream_failure_is_an_error_result(settings) -> None:
    fetcher = DirectFetcher(
        user_agent="test",
        timeout_seconds=5,
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    app = create_app(settings, fetcher=fetcher, run_background=False)
    with TestClient(app) as client:
        body = client.get("/check", params={"date": "12/25/2025"}).json()

    assert body["status"] == "ERROR"
    assert body["message"] == "Upstream returned HTTP 500"


def test_health_lists_cached_results(settings, upstream) -> None:
    with make_client(settings, upstream) as client:
        client.get("/check", params={"date": "12/25/2025"})
        body = client.get("/health").json()

    assert body["status"] == "ok"
    assert body["cached_keys"] == 1
    assert body["sweeps"] == 0
    assert body["results"][0]["dateStr"] == "12/25/2025"
    assert len(upstream.requests) == 1


def test_test_email_without_configuration(settings, upstream) -> None:
    with make_client(settings, upstream) as client:
        response = client.get("/test-email")
    assert response.status_code == 503
    assert "not configured" in response.json()["error"]


@pytest.fixture
def email_settings(settings):
    return settings.model_copy(
        update={"notify_email": "me@example.com", "smtp_user": "bot@example.com", "smtp_password": SecretStr("pw")}
    )


def test_test_email_success(email_settings, upstream, monkeypatch) -> None:
    async def fake_send(settings):
        return settings.notify_email

    monkeypatch.setattr(api, "send_test_email", fake_send)
    with make_client(email_settings, upstream) as client:
        response = client.get("/test-email")

    assert response.status_code == 200
    assert response.json() == {"message": "Test email sent to me@example.com"}


def test_test_email_failure(email_settings, upstream, monkeypatch) -> None:
    async def fake_send(settings):
        raise NotificationError("email", "authentication failed")

    monkeypatch.setattr(api, "send_test_email", fake_send)
    with make_client(email_settings, upstream) as client:
        response = client.get("/test-email")

    assert response.status_code == 500
    assert "authentication failed" in response.json()["error"]


class TestResolveParty:
    def test_defaults_to_single_person(self) -> None:
        assert resolve_party(None, None, None).size == 1

    def test_pair_wins_over_headcount(self) -> None:
        party = resolve_party(5, 2, None)
        assert (party.adults, party.children) == (2, 0)

    def test_negative_counts_are_invalid(self) -> None:
        with pytest.raises(ValueError):
            resolve_party(-1, None, None)
