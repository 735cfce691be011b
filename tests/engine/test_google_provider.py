"""Tests for the Google Calendar provider wire behavior (httpx.MockTransport)."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from schej.engine.errors import (
    MalformedError,
    RateLimitedError,
    RefreshDeniedError,
    UnauthorizedError,
    UnreachableError,
)
from schej.engine.models import SourceRef
from schej.engine.providers.base import EventPushPayload, FetchRequest
from schej.engine.providers.google import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleCalendarProvider,
    google_event_to_interval,
)
from tests.conftest import make_account

pytestmark = pytest.mark.unit

TIME_MIN = datetime(2026, 3, 2, tzinfo=UTC)
TIME_MAX = datetime(2026, 3, 3, tzinfo=UTC)
EVENTS_URL = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"


def _make_provider(
    handler: Callable[[httpx.Request], httpx.Response],
) -> GoogleCalendarProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarProvider(client_id="cid", client_secret="secret", http_client=client)


def _request(sub_calendar_id: str | None = None) -> FetchRequest:
    return FetchRequest(make_account("a@example.com"), sub_calendar_id, UTC)


@pytest.fixture
def no_sleep(monkeypatch) -> AsyncMock:
    sleep = AsyncMock()
    monkeypatch.setattr("schej.engine.providers.google.asyncio.sleep", sleep)
    return sleep


class TestEventNormalization:
    def test_timed_event(self):
        interval = google_event_to_interval(
            {
                "id": "evt-1",
                "iCalUID": "uid-1@google.com",
                "summary": "  Standup ",
                "start": {"dateTime": "2026-03-02T09:00:00-05:00"},
                "end": {"dateTime": "2026-03-02T09:30:00-05:00"},
            },
            source=SourceRef(account_email="a@example.com"),
            tz=UTC,
        )
        assert interval.start == datetime(2026, 3, 2, 14, tzinfo=UTC)
        assert interval.end == datetime(2026, 3, 2, 14, 30, tzinfo=UTC)
        assert interval.title == "Standup"
        assert interval.uid == "uid-1@google.com"
        assert not interval.all_day

    def test_all_day_event_uses_local_midnight(self):
        tz = timezone(timedelta(hours=-5))
        interval = google_event_to_interval(
            {"id": "evt-2", "start": {"date": "2026-03-02"}, "end": {"date": "2026-03-03"}},
            source=SourceRef(account_email="a@example.com"),
            tz=tz,
        )
        assert interval.all_day
        assert interval.start == datetime(2026, 3, 2, 5, tzinfo=UTC)
        assert interval.duration == timedelta(days=1)
        assert interval.uid == "evt-2"

    def test_cancelled_event_is_dropped(self):
        assert (
            google_event_to_interval(
                {"id": "x", "status": "cancelled"},
                source=SourceRef(account_email="a@example.com"),
                tz=UTC,
            )
            is None
        )

    def test_missing_boundaries_are_malformed(self):
        with pytest.raises(MalformedError):
            google_event_to_interval(
                {"id": "x", "start": {}, "end": {"dateTime": "2026-03-02T09:00:00Z"}},
                source=SourceRef(account_email="a@example.com"),
                tz=UTC,
            )


class TestFetchEvents:
    async def test_follows_pages_and_sorts(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "pageToken" not in request.url.params:
                return httpx.Response(
                    200,
                    json={
                        "items": [
                            {
                                "id": "late",
                                "start": {"dateTime": "2026-03-02T15:00:00Z"},
                                "end": {"dateTime": "2026-03-02T16:00:00Z"},
                            }
                        ],
                        "nextPageToken": "page-2",
                    },
                )
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "early",
                            "start": {"dateTime": "2026-03-02T09:00:00Z"},
                            "end": {"dateTime": "2026-03-02T10:00:00Z"},
                        },
                        {"id": "gone", "status": "cancelled"},
                    ]
                },
            )

        provider = _make_provider(handler)
        try:
            intervals = await provider.fetch_events(
                _request(), time_min=TIME_MIN, time_max=TIME_MAX
            )
        finally:
            await provider.shutdown()

        assert [interval.uid for interval in intervals] == ["early", "late"]
        assert len(requests) == 2
        first = requests[0]
        assert str(first.url).startswith(EVENTS_URL)
        assert first.headers["Authorization"] == "Bearer access-1"
        assert first.url.params["singleEvents"] == "true"
        assert first.url.params["orderBy"] == "startTime"
        assert first.url.params["timeMin"] == "2026-03-02T00:00:00Z"
        assert first.url.params["timeMax"] == "2026-03-03T00:00:00Z"
        assert requests[1].url.params["pageToken"] == "page-2"

    async def test_sub_calendar_id_is_url_encoded(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.raw_path.decode())
            return httpx.Response(200, json={"items": []})

        provider = _make_provider(handler)
        intervals = await provider.fetch_events(
            _request("team#holiday@group.v.calendar.google.com"),
            time_min=TIME_MIN,
            time_max=TIME_MAX,
        )
        assert intervals == []
        assert "/calendars/team%23holiday%40group.v.calendar.google.com/events" in seen[0]

    async def test_401_is_unauthorized(self):
        provider = _make_provider(
            lambda request: httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})
        )
        with pytest.raises(UnauthorizedError) as excinfo:
            await provider.fetch_events(_request(), time_min=TIME_MIN, time_max=TIME_MAX)
        assert excinfo.value.status_code == 401

    async def test_missing_access_token_is_unauthorized_without_request(self):
        calls: list[httpx.Request] = []
        provider = _make_provider(lambda request: calls.append(request) or httpx.Response(200))
        account = make_account("a@example.com", access_token=None)
        with pytest.raises(UnauthorizedError):
            await provider.fetch_events(
                FetchRequest(account, None, UTC), time_min=TIME_MIN, time_max=TIME_MAX
            )
        assert calls == []

    async def test_rate_limit_retries_then_succeeds(self, no_sleep):
        responses = iter(
            [
                httpx.Response(429, headers={"Retry-After": "2"}),
                httpx.Response(200, json={"items": []}),
            ]
        )
        provider = _make_provider(lambda request: next(responses))
        assert await provider.fetch_events(_request(), time_min=TIME_MIN, time_max=TIME_MAX) == []
        no_sleep.assert_awaited_once_with(2.0)

    async def test_persistent_rate_limit_is_bounded(self, no_sleep):
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        provider = _make_provider(handler)
        with pytest.raises(RateLimitedError):
            await provider.fetch_events(_request(), time_min=TIME_MIN, time_max=TIME_MAX)
        assert len(calls) == 4
        assert [call.args[0] for call in no_sleep.await_args_list] == [0.5, 1.0, 2.0]

    async def test_server_error_is_unreachable(self):
        provider = _make_provider(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(UnreachableError, match="500"):
            await provider.fetch_events(_request(), time_min=TIME_MIN, time_max=TIME_MAX)

    async def test_transport_error_is_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = _make_provider(handler)
        with pytest.raises(UnreachableError, match="ConnectError"):
            await provider.fetch_events(_request(), time_min=TIME_MIN, time_max=TIME_MAX)

    async def test_invalid_json_is_malformed(self):
        provider = _make_provider(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(MalformedError):
            await provider.fetch_events(_request(), time_min=TIME_MIN, time_max=TIME_MAX)


class TestRefreshCredentials:
    async def test_exchange_returns_grant_with_rotation(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={"access_token": "access-2", "expires_in": 1800, "refresh_token": "refresh-2"},
            )

        provider = _make_provider(handler)
        before = datetime.now(UTC)
        grant = await provider.refresh_credentials(make_account("a@example.com"))

        assert str(requests[0].url) == GOOGLE_OAUTH_TOKEN_URL
        body = requests[0].content.decode()
        assert "grant_type=refresh_token" in body
        assert "refresh_token=refresh-1" in body
        assert grant.access_token == "access-2"
        assert grant.refresh_token == "refresh-2"
        assert before + timedelta(seconds=1790) <= grant.expires_at
        assert grant.expires_at <= datetime.now(UTC) + timedelta(seconds=1800)

    async def test_without_rotation_refresh_token_is_none(self):
        provider = _make_provider(
            lambda request: httpx.Response(200, json={"access_token": "access-2"})
        )
        grant = await provider.refresh_credentials(make_account("a@example.com"))
        assert grant.refresh_token is None

    @pytest.mark.parametrize("status", [400, 401])
    async def test_invalid_grant_is_refresh_denied(self, status):
        provider = _make_provider(
            lambda request: httpx.Response(
                status, json={"error": "invalid_grant", "error_description": "Token revoked"}
            )
        )
        with pytest.raises(RefreshDeniedError, match="invalid_grant: Token revoked"):
            await provider.refresh_credentials(make_account("a@example.com"))

    async def test_token_endpoint_outage_is_unreachable(self):
        provider = _make_provider(lambda request: httpx.Response(502))
        with pytest.raises(UnreachableError):
            await provider.refresh_credentials(make_account("a@example.com"))

    async def test_missing_access_token_is_malformed(self):
        provider = _make_provider(lambda request: httpx.Response(200, json={"expires_in": 10}))
        with pytest.raises(MalformedError):
            await provider.refresh_credentials(make_account("a@example.com"))

    async def test_account_without_refresh_token_is_denied(self):
        provider = _make_provider(lambda request: httpx.Response(500))
        with pytest.raises(RefreshDeniedError):
            await provider.refresh_credentials(
                make_account("a@example.com", refresh_token=None)
            )


class TestPush:
    async def test_create_event_posts_body_and_returns_id(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "created-1"})

        provider = _make_provider(handler)
        event_id = await provider.create_event(
            make_account("a@example.com"),
            EventPushPayload(
                title="Planning",
                start=datetime(2026, 3, 2, 9, tzinfo=UTC),
                end=datetime(2026, 3, 2, 10, tzinfo=UTC),
                uid="schej-e1-1",
                attendees=["b@example.com"],
            ),
        )
        assert event_id == "created-1"
        assert requests[0].method == "POST"
        assert str(requests[0].url) == EVENTS_URL
        body = json.loads(requests[0].content)
        assert body["summary"] == "Planning"
        assert body["start"] == {"dateTime": "2026-03-02T09:00:00Z", "timeZone": "UTC"}
        assert body["attendees"] == [{"email": "b@example.com"}]

    @pytest.mark.parametrize("status", [204, 404, 410])
    async def test_delete_tolerates_missing_event(self, status):
        provider = _make_provider(lambda request: httpx.Response(status))
        await provider.delete_event(make_account("a@example.com"), "created-1")

    async def test_list_calendars_prefers_summary_override(self):
        provider = _make_provider(
            lambda request: httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "a@example.com", "summary": "a@example.com", "primary": True},
                        {"id": "team", "summary": "Team", "summaryOverride": "My team"},
                        {"summary": "no id"},
                    ]
                },
            )
        )
        calendars = await provider.list_calendars(make_account("a@example.com"))
        assert [(c.id, c.name, c.primary) for c in calendars] == [
            ("a@example.com", "a@example.com", True),
            ("team", "My team", False),
        ]
