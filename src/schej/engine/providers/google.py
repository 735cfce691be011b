"""Google Calendar provider: bearer-token REST client with refresh-token exchange."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from urllib.parse import quote

import httpx

from schej.engine.errors import (
    MalformedError,
    RateLimitedError,
    RefreshDeniedError,
    UnauthorizedError,
    UnreachableError,
)
from schej.engine.models import (
    CalendarAccount,
    CalendarProviderKind,
    DiscoveredCalendar,
    Interval,
    SourceRef,
)
from schej.engine.providers.base import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    RATE_LIMIT_MAX_RETRIES,
    RATE_LIMIT_RETRY_STATUS_CODES,
    CalendarProvider,
    EventPushPayload,
    FetchRequest,
    TokenGrant,
    parse_rfc3339,
    retry_backoff_seconds,
    safe_error_message,
    transport_error,
    utc_rfc3339,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_MAX_PAGE_SIZE = 250
SCHEJ_UID_PRIVATE_KEY = "schej_uid"


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    tz: tzinfo,
) -> tuple[datetime, bool]:
    """Return ``(instant, all_day)`` for a Google start/end payload.

    Date-only boundaries resolve to local midnight in *tz*.
    """
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_rfc3339(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise MalformedError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=tz), True

    raise MalformedError("Google Calendar event is missing start/end dateTime or date values")


def google_event_to_interval(
    payload: dict[str, Any],
    *,
    source: SourceRef,
    tz: tzinfo,
) -> Interval | None:
    """Normalize one Google event payload; cancelled events yield ``None``."""
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        event_id = payload.get("id", "<unknown>")
        raise MalformedError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    start_at, start_all_day = _parse_google_event_boundary(start_payload, tz=tz)
    end_at, _ = _parse_google_event_boundary(end_payload, tz=tz)

    try:
        return Interval(
            start=start_at,
            end=end_at,
            all_day=start_all_day,
            source=source,
            title=_normalize_optional_text(payload.get("summary")),
            uid=_normalize_optional_text(payload.get("iCalUID"))
            or _normalize_optional_text(payload.get("id")),
        )
    except ValueError as exc:
        raise MalformedError(f"Google Calendar event has invalid boundaries: {exc}") from exc


def _build_google_event_body(payload: EventPushPayload) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": payload.title,
        "start": {"dateTime": utc_rfc3339(payload.start), "timeZone": "UTC"},
        "end": {"dateTime": utc_rfc3339(payload.end), "timeZone": "UTC"},
        "extendedProperties": {"private": {SCHEJ_UID_PRIVATE_KEY: payload.uid}},
    }
    if payload.description:
        body["description"] = payload.description
    if payload.attendees:
        body["attendees"] = [{"email": email} for email in payload.attendees]
    return body


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 client.

    Access tokens come from the account document; an expired or revoked
    token surfaces as ``UnauthorizedError`` so the token refresher can
    exchange the refresh token and retry exactly once.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._api_base_url = api_base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)

    @property
    def kind(self) -> CalendarProviderKind:
        return CalendarProviderKind.GOOGLE

    @property
    def supports_refresh(self) -> bool:
        return True

    async def _request_with_bearer(
        self,
        account: CalendarAccount,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if not account.access_token:
            raise UnauthorizedError(f"Account '{account.email}' has no access token")

        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._api_base_url}{normalized_path}"
        headers = {"Authorization": f"Bearer {account.access_token}"}

        response = await self._request_once(method, url, params, json_body, headers)
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = retry_backoff_seconds(response, retry)
            logger.warning(
                "Google Calendar rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, params, json_body, headers)
            retry += 1

        if response.status_code == 401:
            raise UnauthorizedError(
                f"Google Calendar rejected the access token: {safe_error_message(response)}",
                status_code=401,
            )
        if response.status_code in RATE_LIMIT_RETRY_STATUS_CODES:
            raise RateLimitedError(
                f"Google Calendar still rate-limited after {RATE_LIMIT_MAX_RETRIES} retries",
                status_code=response.status_code,
            )
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        headers: dict[str, str],
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise transport_error("Google Calendar", exc) from exc

    async def _request_google_json(
        self,
        account: CalendarAccount,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            account,
            method=method,
            path=path,
            params=params,
            json_body=json_body,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise UnreachableError(
                f"Google Calendar API request failed ({response.status_code}): "
                f"{safe_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise MalformedError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _paginate(
        self,
        account: CalendarAccount,
        path: str,
        params: dict[str, Any],
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            payload = await self._request_google_json(account, "GET", path, params=page_params)
            page_items = payload.get("items", [])
            if not isinstance(page_items, list):
                raise MalformedError(f"Google Calendar response for {path} has a non-list items")
            items.extend(item for item in page_items if isinstance(item, dict))
            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                return items
            page_token = next_token

    async def fetch_events(
        self,
        request: FetchRequest,
        *,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Interval]:
        calendar_id = request.sub_calendar_id or "primary"
        source = SourceRef(
            account_email=request.account.email,
            sub_calendar_id=request.sub_calendar_id,
        )
        items = await self._paginate(
            request.account,
            f"/calendars/{quote(calendar_id, safe='')}/events",
            {
                "singleEvents": "true",
                "orderBy": "startTime",
                "showDeleted": "false",
                "timeMin": utc_rfc3339(time_min),
                "timeMax": utc_rfc3339(time_max),
                "maxResults": GOOGLE_MAX_PAGE_SIZE,
            },
        )
        intervals: list[Interval] = []
        for item in items:
            interval = google_event_to_interval(item, source=source, tz=request.tz)
            if interval is not None:
                intervals.append(interval)
        intervals.sort(key=lambda interval: (interval.start, interval.end))
        return intervals

    async def list_calendars(self, account: CalendarAccount) -> list[DiscoveredCalendar]:
        items = await self._paginate(
            account,
            "/users/me/calendarList",
            {"maxResults": GOOGLE_MAX_PAGE_SIZE},
        )
        calendars: list[DiscoveredCalendar] = []
        for item in items:
            calendar_id = _normalize_optional_text(item.get("id"))
            if calendar_id is None:
                continue
            calendars.append(
                DiscoveredCalendar(
                    id=calendar_id,
                    name=_normalize_optional_text(item.get("summaryOverride"))
                    or _normalize_optional_text(item.get("summary"))
                    or calendar_id,
                    primary=item.get("primary") is True,
                )
            )
        return calendars

    async def create_event(self, account: CalendarAccount, payload: EventPushPayload) -> str:
        calendar_id = quote(payload.sub_calendar_id or "primary", safe="")
        response_payload = await self._request_google_json(
            account,
            "POST",
            f"/calendars/{calendar_id}/events",
            json_body=_build_google_event_body(payload),
        )
        event_id = _normalize_optional_text(response_payload.get("id"))
        if event_id is None:
            raise MalformedError("Google Calendar create response is missing an event id")
        return event_id

    async def delete_event(self, account: CalendarAccount, calendar_event_id: str) -> None:
        normalized_event_id = calendar_event_id.strip()
        if not normalized_event_id:
            raise ValueError("calendar_event_id must be a non-empty string")
        response = await self._request_with_bearer(
            account,
            method="DELETE",
            path=f"/calendars/primary/events/{quote(normalized_event_id, safe='')}",
        )
        if response.status_code in (404, 410):
            logger.debug("Google event '%s' already deleted", normalized_event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise UnreachableError(
                f"Google Calendar delete failed ({response.status_code}): "
                f"{safe_error_message(response)}",
                status_code=response.status_code,
            )

    async def refresh_credentials(self, account: CalendarAccount) -> TokenGrant:
        if not account.refresh_token:
            raise RefreshDeniedError(f"Account '{account.email}' has no refresh token")
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": account.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise transport_error("Google OAuth token refresh", exc) from exc

        if response.status_code in (400, 401):
            raise RefreshDeniedError(
                f"Google OAuth token refresh denied ({response.status_code}): "
                f"{safe_error_message(response)}",
                status_code=response.status_code,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise UnreachableError(
                f"Google OAuth token refresh failed ({response.status_code}): "
                f"{safe_error_message(response)}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise MalformedError("Google OAuth token response is missing a non-empty access_token")

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        rotated = _normalize_optional_text(payload.get("refresh_token"))
        return TokenGrant(
            access_token=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in_seconds),
            refresh_token=rotated,
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
