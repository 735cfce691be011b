"""CalDAV provider (Apple iCloud and other RFC 4791 servers).

Speaks WebDAV over httpx with Basic auth and parses calendar objects with
``icalendar``. The calendar-query body is a compatibility contract with
real servers: it requests VCALENDAR > VEVENT with exactly the properties
SUMMARY, UID, DTSTART, DTEND and DURATION, filtered by a UTC time range.
"""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any

import httpx
import icalendar

from schej.engine.errors import (
    MalformedError,
    RateLimitedError,
    UnauthorizedError,
    UnreachableError,
)
from schej.engine.models import (
    CalDAVConnection,
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
    retry_backoff_seconds,
    safe_error_message,
    transport_error,
)

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
QUERY_PROPERTIES = ("SUMMARY", "UID", "DTSTART", "DTEND", "DURATION")
PRODID = "-//schej//calendar engine//EN"

_NS = {"D": DAV_NS, "C": CALDAV_NS}

_CURRENT_USER_PRINCIPAL_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<D:propfind xmlns:D="DAV:">'
    "<D:prop><D:current-user-principal/></D:prop>"
    "</D:propfind>"
)
_CALENDAR_HOME_SET_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">'
    "<D:prop><C:calendar-home-set/></D:prop>"
    "</D:propfind>"
)
_CALENDAR_LIST_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">'
    "<D:prop><D:resourcetype/><D:displayname/>"
    "<C:supported-calendar-component-set/></D:prop>"
    "</D:propfind>"
)


def caldav_utc(value: datetime) -> str:
    """Format an instant as a CalDAV UTC time-range value (``YYYYMMDDTHHMMSSZ``)."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def build_calendar_query(time_min: datetime, time_max: datetime) -> str:
    """Render the calendar-query REPORT body for ``[time_min, time_max)``."""
    props = "".join(f'<C:prop name="{name}"/>' for name in QUERY_PROPERTIES)
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">'
        "<D:prop>"
        "<D:getetag/>"
        "<C:calendar-data>"
        '<C:comp name="VCALENDAR">'
        f'<C:comp name="VEVENT">{props}</C:comp>'
        "</C:comp>"
        "</C:calendar-data>"
        "</D:prop>"
        "<C:filter>"
        '<C:comp-filter name="VCALENDAR">'
        '<C:comp-filter name="VEVENT">'
        f'<C:time-range start="{caldav_utc(time_min)}" end="{caldav_utc(time_max)}"/>'
        "</C:comp-filter>"
        "</C:comp-filter>"
        "</C:filter>"
        "</C:calendar-query>"
    )


def _parse_multistatus(content: bytes) -> list[ET.Element]:
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise MalformedError(f"CalDAV server returned invalid XML: {exc}") from exc
    if root.tag != f"{{{DAV_NS}}}multistatus":
        raise MalformedError(f"CalDAV server returned unexpected root element {root.tag!r}")
    return root.findall("D:response", _NS)


def _find_href(response: ET.Element, path: str) -> str | None:
    element = response.find(path, _NS)
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _to_instant(value: date | datetime, tz: tzinfo) -> tuple[datetime, bool]:
    """Return ``(instant, all_day)``; floating times are read in *tz*."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz), False
        return value, False
    return datetime(value.year, value.month, value.day, tzinfo=tz), True


def _property_dt(component: icalendar.cal.Component, name: str) -> Any | None:
    prop = component.get(name)
    if prop is None:
        return None
    try:
        return prop.dt
    except (ValueError, TypeError, AttributeError) as exc:
        raise MalformedError(f"CalDAV VEVENT has an unreadable {name}: {exc}") from exc


def vevent_to_interval(
    component: icalendar.cal.Component,
    *,
    source: SourceRef,
    tz: tzinfo,
) -> Interval:
    """Normalize one VEVENT: DTEND wins, else DTSTART + DURATION."""
    dtstart = _property_dt(component, "DTSTART")
    if dtstart is None:
        raise MalformedError("CalDAV VEVENT is missing DTSTART")
    dtend = _property_dt(component, "DTEND")
    duration = _property_dt(component, "DURATION")

    try:
        start, all_day = _to_instant(dtstart, tz)
        if dtend is not None:
            end, _ = _to_instant(dtend, tz)
        elif duration is not None:
            if not isinstance(duration, timedelta):
                raise MalformedError(f"CalDAV VEVENT has an invalid DURATION: {duration!r}")
            end = start + duration
        elif all_day:
            end = start + timedelta(days=1)
        else:
            end = start
        return Interval(
            start=start,
            end=end,
            all_day=all_day,
            source=source,
            title=_optional_text(component.get("SUMMARY")),
            uid=_optional_text(component.get("UID")),
        )
    except (ValueError, TypeError, AttributeError, OverflowError) as exc:
        raise MalformedError(f"CalDAV VEVENT has invalid boundaries: {exc}") from exc


def _in_window(interval: Interval, time_min: datetime, time_max: datetime) -> bool:
    if interval.start == interval.end:
        return time_min <= interval.start < time_max
    return interval.overlaps(time_min, time_max)


def parse_calendar_objects(
    content: bytes,
    *,
    source: SourceRef,
    tz: tzinfo,
    time_min: datetime,
    time_max: datetime,
) -> list[Interval]:
    """Parse a calendar-query multistatus body into intervals."""
    intervals: list[Interval] = []
    for response in _parse_multistatus(content):
        data = response.find("D:propstat/D:prop/C:calendar-data", _NS)
        if data is None or not (data.text or "").strip():
            continue
        try:
            calendar = icalendar.Calendar.from_ical(data.text)
        except ValueError as exc:
            href = _find_href(response, "D:href") or "<unknown>"
            raise MalformedError(f"CalDAV object {href} is not valid iCalendar: {exc}") from exc
        try:
            components = calendar.walk("VEVENT")
        except (ValueError, TypeError, AttributeError) as exc:
            href = _find_href(response, "D:href") or "<unknown>"
            raise MalformedError(f"CalDAV object {href} has unreadable events: {exc}") from exc
        for component in components:
            interval = vevent_to_interval(component, source=source, tz=tz)
            if _in_window(interval, time_min, time_max):
                intervals.append(interval)
    intervals.sort(key=lambda interval: (interval.start, interval.end))
    return intervals


def build_vcalendar(payload: EventPushPayload) -> bytes:
    calendar = icalendar.Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    event = icalendar.Event()
    event.add("uid", payload.uid)
    event.add("dtstamp", datetime.now(UTC))
    event.add("dtstart", payload.start.astimezone(UTC))
    event.add("dtend", payload.end.astimezone(UTC))
    event.add("summary", payload.title)
    if payload.description:
        event.add("description", payload.description)
    for email in payload.attendees:
        event.add("attendee", f"mailto:{email}")
    calendar.add_component(event)
    return calendar.to_ical()


class CalDAVProvider(CalendarProvider):
    """CalDAV client; credentials are app passwords that cannot be refreshed."""

    def __init__(
        self,
        *,
        default_server_url: str = "https://caldav.icloud.com",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._default_server_url = default_server_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=DEFAULT_HTTP_TIMEOUT_SECONDS,
            follow_redirects=True,
        )

    @property
    def kind(self) -> CalendarProviderKind:
        return CalendarProviderKind.CALDAV

    def _connection(self, account: CalendarAccount) -> CalDAVConnection:
        if account.caldav is None:
            raise MalformedError(f"Account '{account.email}' has no CalDAV connection parameters")
        return account.caldav

    def _resolve(self, connection: CalDAVConnection, href: str) -> httpx.URL:
        base = connection.server_url or self._default_server_url
        return httpx.URL(f"{base}/").join(href)

    async def _request(
        self,
        account: CalendarAccount,
        method: str,
        url: httpx.URL,
        *,
        depth: str | None = None,
        content: str | bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        connection = self._connection(account)
        request_headers: dict[str, str] = {}
        if content is not None and method in ("PROPFIND", "REPORT"):
            request_headers["Content-Type"] = "application/xml; charset=utf-8"
        if depth is not None:
            request_headers["Depth"] = depth
        if headers:
            request_headers.update(headers)
        auth = httpx.BasicAuth(connection.username, connection.password)

        response = await self._request_once(method, url, content, request_headers, auth)
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = retry_backoff_seconds(response, retry)
            logger.warning(
                "CalDAV server rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, content, request_headers, auth)
            retry += 1

        if response.status_code == 401:
            raise UnauthorizedError(
                f"CalDAV server rejected credentials for '{account.email}'",
                status_code=401,
            )
        if response.status_code in RATE_LIMIT_RETRY_STATUS_CODES:
            raise RateLimitedError(
                f"CalDAV server still rate-limited after {RATE_LIMIT_MAX_RETRIES} retries",
                status_code=response.status_code,
            )
        return response

    async def _request_once(
        self,
        method: str,
        url: httpx.URL,
        content: str | bytes | None,
        headers: dict[str, str],
        auth: httpx.BasicAuth,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                content=content,
                headers=headers,
                auth=auth,
            )
        except httpx.HTTPError as exc:
            raise transport_error("CalDAV", exc) from exc

    async def _dav(
        self,
        account: CalendarAccount,
        method: str,
        url: httpx.URL,
        body: str,
        *,
        depth: str,
    ) -> list[ET.Element]:
        response = await self._request(account, method, url, depth=depth, content=body)
        if response.status_code not in (200, 207):
            raise UnreachableError(
                f"CalDAV {method} {url.path} failed ({response.status_code}): "
                f"{safe_error_message(response)}",
                status_code=response.status_code,
            )
        return _parse_multistatus(response.content)

    async def _find_current_user_principal(self, account: CalendarAccount) -> str:
        connection = self._connection(account)
        responses = await self._dav(
            account,
            "PROPFIND",
            self._resolve(connection, ""),
            _CURRENT_USER_PRINCIPAL_BODY,
            depth="0",
        )
        for response in responses:
            href = _find_href(response, "D:propstat/D:prop/D:current-user-principal/D:href")
            if href is not None:
                return href
        raise MalformedError("CalDAV server did not report a current-user-principal")

    async def _find_calendar_home_set(self, account: CalendarAccount, principal: str) -> str:
        connection = self._connection(account)
        responses = await self._dav(
            account,
            "PROPFIND",
            self._resolve(connection, principal),
            _CALENDAR_HOME_SET_BODY,
            depth="0",
        )
        for response in responses:
            href = _find_href(response, "D:propstat/D:prop/C:calendar-home-set/D:href")
            if href is not None:
                return href
        raise MalformedError("CalDAV server did not report a calendar-home-set")

    async def list_calendars(self, account: CalendarAccount) -> list[DiscoveredCalendar]:
        connection = self._connection(account)
        principal = await self._find_current_user_principal(account)
        home_set = await self._find_calendar_home_set(account, principal)
        responses = await self._dav(
            account,
            "PROPFIND",
            self._resolve(connection, home_set),
            _CALENDAR_LIST_BODY,
            depth="1",
        )
        calendars: list[DiscoveredCalendar] = []
        for response in responses:
            href = _find_href(response, "D:href")
            prop = response.find("D:propstat/D:prop", _NS)
            if href is None or prop is None:
                continue
            if prop.find("D:resourcetype/C:calendar", _NS) is None:
                continue
            components = {
                comp.get("name", "").upper()
                for comp in prop.findall("C:supported-calendar-component-set/C:comp", _NS)
            }
            if components and "VEVENT" not in components:
                continue
            name_element = prop.find("D:displayname", _NS)
            name = (name_element.text or "").strip() if name_element is not None else ""
            calendars.append(DiscoveredCalendar(id=href, name=name or href))
        if calendars:
            calendars[0] = calendars[0].model_copy(update={"primary": True})
        return calendars

    async def _default_calendar(self, account: CalendarAccount) -> str:
        calendars = await self.list_calendars(account)
        if not calendars:
            raise MalformedError(f"CalDAV account '{account.email}' has no event calendars")
        return calendars[0].id

    async def fetch_events(
        self,
        request: FetchRequest,
        *,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Interval]:
        account = request.account
        connection = self._connection(account)
        calendar_href = request.sub_calendar_id or await self._default_calendar(account)
        response = await self._request(
            account,
            "REPORT",
            self._resolve(connection, calendar_href),
            depth="1",
            content=build_calendar_query(time_min, time_max),
        )
        if response.status_code not in (200, 207):
            raise UnreachableError(
                f"CalDAV calendar-query failed ({response.status_code}): "
                f"{safe_error_message(response)}",
                status_code=response.status_code,
            )
        return parse_calendar_objects(
            response.content,
            source=SourceRef(account_email=account.email, sub_calendar_id=request.sub_calendar_id),
            tz=request.tz,
            time_min=time_min,
            time_max=time_max,
        )

    async def create_event(self, account: CalendarAccount, payload: EventPushPayload) -> str:
        connection = self._connection(account)
        calendar_href = payload.sub_calendar_id or await self._default_calendar(account)
        target = self._resolve(connection, f"{calendar_href.rstrip('/')}/{payload.uid}.ics")
        response = await self._request(
            account,
            "PUT",
            target,
            content=build_vcalendar(payload),
            headers={"Content-Type": "text/calendar; charset=utf-8", "If-None-Match": "*"},
        )
        if response.status_code not in (200, 201, 204):
            raise UnreachableError(
                f"CalDAV PUT failed ({response.status_code}): {safe_error_message(response)}",
                status_code=response.status_code,
            )
        return str(target)

    async def delete_event(self, account: CalendarAccount, calendar_event_id: str) -> None:
        connection = self._connection(account)
        response = await self._request(
            account,
            "DELETE",
            self._resolve(connection, calendar_event_id),
        )
        if response.status_code in (404, 410):
            logger.debug("CalDAV object '%s' already deleted", calendar_event_id)
            return
        if response.status_code not in (200, 204):
            raise UnreachableError(
                f"CalDAV DELETE failed ({response.status_code}): {safe_error_message(response)}",
                status_code=response.status_code,
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

