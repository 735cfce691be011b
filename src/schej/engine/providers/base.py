"""Provider capability interface and the shared wire helpers."""

from __future__ import annotations

import abc
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo

import httpx

from schej.engine.errors import MalformedError, UnreachableError
from schej.engine.models import CalendarAccount, CalendarProviderKind, DiscoveredCalendar, Interval

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 0.5
# Cap on a server-supplied Retry-After.
RATE_LIMIT_MAX_BACKOFF_SECONDS = 8.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class FetchRequest:
    """Everything a provider needs to fetch one source."""

    account: CalendarAccount
    sub_calendar_id: str | None
    tz: tzinfo


@dataclass(frozen=True)
class TokenGrant:
    """Result of a refresh-token exchange."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass(frozen=True)
class EventPushPayload:
    """A calendar entry to create for a finalized poll."""

    title: str
    start: datetime
    end: datetime
    uid: str
    description: str | None = None
    attendees: list[str] = field(default_factory=list)
    sub_calendar_id: str | None = None


class CalendarProvider(abc.ABC):
    """Capability implemented once per provider family."""

    @property
    @abc.abstractmethod
    def kind(self) -> CalendarProviderKind:
        """Provider family handled by this client."""
        ...

    @property
    def supports_refresh(self) -> bool:
        return False

    @abc.abstractmethod
    async def fetch_events(
        self,
        request: FetchRequest,
        *,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Interval]:
        """Return normalized intervals in ``[time_min, time_max)`` ordered by start.

        Raises ``UnauthorizedError``, ``RateLimitedError``, ``UnreachableError``
        or ``MalformedError``.
        """
        ...

    @abc.abstractmethod
    async def list_calendars(self, account: CalendarAccount) -> list[DiscoveredCalendar]:
        """List the calendars visible to the account."""
        ...

    @abc.abstractmethod
    async def create_event(self, account: CalendarAccount, payload: EventPushPayload) -> str:
        """Create a calendar entry and return its provider id."""
        ...

    @abc.abstractmethod
    async def delete_event(self, account: CalendarAccount, calendar_event_id: str) -> None:
        """Delete a calendar entry; a missing entry counts as deleted."""
        ...

    async def refresh_credentials(self, account: CalendarAccount) -> TokenGrant:
        """Exchange the account's refresh token for a new access token."""
        raise NotImplementedError(f"{self.kind} provider does not refresh credentials")

    async def shutdown(self) -> None:
        """Release provider resources."""


class ProviderSet:
    """Maps provider kinds to their clients."""

    def __init__(self, providers: Iterable[CalendarProvider] = ()) -> None:
        self._providers: dict[CalendarProviderKind, CalendarProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: CalendarProvider) -> None:
        self._providers[provider.kind] = provider

    def get(self, kind: CalendarProviderKind | str) -> CalendarProvider:
        try:
            return self._providers[CalendarProviderKind(kind)]
        except (KeyError, ValueError):
            raise MalformedError(f"No calendar provider registered for kind {kind!r}") from None

    def for_account(self, account: CalendarAccount) -> CalendarProvider:
        return self.get(account.provider)

    @property
    def kinds(self) -> list[CalendarProviderKind]:
        return list(self._providers)

    async def shutdown(self) -> None:
        for provider in self._providers.values():
            await provider.shutdown()


def utc_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise MalformedError(f"Provider returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, Mapping):
        error_payload = payload.get("error")
        if isinstance(error_payload, Mapping):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return " ".join(f"{error_payload}: {description}".split())[:200]
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def retry_backoff_seconds(response: httpx.Response, attempt: int) -> float:
    """Exponential backoff, or the Retry-After header on 429 when present."""
    backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**attempt)
    if response.status_code == 429:
        retry_after_header = response.headers.get("Retry-After")
        if retry_after_header is not None:
            try:
                backoff = float(retry_after_header)
            except ValueError:
                logger.debug("Ignoring non-numeric Retry-After header: %s", retry_after_header)
    return min(max(backoff, 0.0), RATE_LIMIT_MAX_BACKOFF_SECONDS)


def transport_error(provider: str, exc: httpx.HTTPError) -> UnreachableError:
    return UnreachableError(f"{provider} request failed: {type(exc).__name__}: {exc}")
