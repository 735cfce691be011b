"""Engine test doubles and document factories shared by the test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import pytest

from schej.engine.errors import UnauthorizedError
from schej.engine.models import (
    CalDAVConnection,
    CalendarAccount,
    CalendarProviderKind,
    DiscoveredCalendar,
    Interval,
    SourceRef,
    SubCalendar,
    User,
)
from schej.engine.providers.base import (
    CalendarProvider,
    EventPushPayload,
    FetchRequest,
    ProviderSet,
    TokenGrant,
)
from schej.storage.memory import InMemoryStore

T0 = datetime(2026, 3, 2, tzinfo=UTC)  # a Monday


def at(hours: float, *, day: int = 0) -> datetime:
    """``T0`` plus *day* days and *hours* hours."""
    return T0 + timedelta(days=day, hours=hours)


def make_account(
    email: str,
    *,
    provider: CalendarProviderKind = CalendarProviderKind.GOOGLE,
    enabled: bool | None = True,
    sub_calendars: dict[str, bool | None] | None = None,
    access_token: str | None = "access-1",
    expires_in: timedelta | None = timedelta(hours=1),
    refresh_token: str | None = "refresh-1",
    timezone: str | None = None,
) -> CalendarAccount:
    caldav = None
    if provider == CalendarProviderKind.CALDAV:
        caldav = CalDAVConnection(username=email, password="app-password")
        access_token = None
        refresh_token = None
        expires_in = None
    return CalendarAccount(
        email=email,
        enabled=enabled,
        provider=provider,
        sub_calendars=(
            {key: SubCalendar(name=key, enabled=flag) for key, flag in sub_calendars.items()}
            if sub_calendars is not None
            else None
        ),
        access_token=access_token,
        access_token_expire_date=(
            datetime.now(UTC) + expires_in if expires_in is not None else None
        ),
        refresh_token=refresh_token,
        timezone=timezone,
        caldav=caldav,
    )


def make_user(
    user_id: str = "alice",
    *,
    email: str = "alice@example.com",
    accounts: Iterable[CalendarAccount] = (),
    timezone_offset: int = 0,
) -> User:
    return User(
        id=user_id,
        email=email,
        first_name=user_id.capitalize(),
        timezone_offset=timezone_offset,
        calendar_accounts={account.email: account for account in accounts},
    )


def busy(
    email: str,
    start: datetime,
    end: datetime,
    *,
    sub_calendar_id: str | None = None,
    title: str | None = None,
    uid: str | None = None,
    all_day: bool = False,
) -> Interval:
    return Interval(
        start=start,
        end=end,
        all_day=all_day,
        source=SourceRef(account_email=email, sub_calendar_id=sub_calendar_id),
        title=title,
        uid=uid,
    )


class FakeProvider(CalendarProvider):
    """Scriptable provider that records every call it receives."""

    def __init__(
        self,
        kind: CalendarProviderKind = CalendarProviderKind.GOOGLE,
        *,
        supports_refresh: bool | None = None,
    ) -> None:
        self._kind = kind
        self._supports_refresh = (
            kind == CalendarProviderKind.GOOGLE if supports_refresh is None else supports_refresh
        )
        self.events: dict[tuple[str, str | None], list[Interval]] = {}
        self.fetch_errors: dict[tuple[str, str | None], list[Exception]] = {}
        self.fetch_calls: list[FetchRequest] = []
        self.fetch_delay: dict[tuple[str, str | None], float] = {}
        # When set, fetches with any other access token are rejected.
        self.valid_tokens: set[str] | None = None
        self.grants: list[TokenGrant | Exception] = []
        self.refresh_calls: list[str] = []
        self.calendars: list[DiscoveredCalendar] = []
        self.created: list[tuple[CalendarAccount, EventPushPayload]] = []
        self.create_errors: list[Exception] = []
        self.deleted: list[str] = []
        self.shutdown_called = False

    @property
    def kind(self) -> CalendarProviderKind:
        return self._kind

    @property
    def supports_refresh(self) -> bool:
        return self._supports_refresh

    def _check_token(self, account: CalendarAccount) -> None:
        if self.valid_tokens is not None and account.access_token not in self.valid_tokens:
            raise UnauthorizedError(f"token rejected for {account.email}", status_code=401)

    async def fetch_events(
        self,
        request: FetchRequest,
        *,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Interval]:
        key = (request.account.email, request.sub_calendar_id)
        self.fetch_calls.append(request)
        delay = self.fetch_delay.get(key)
        if delay:
            await asyncio.sleep(delay)
        self._check_token(request.account)
        errors = self.fetch_errors.get(key)
        if errors:
            raise errors.pop(0)
        return list(self.events.get(key, []))

    async def list_calendars(self, account: CalendarAccount) -> list[DiscoveredCalendar]:
        self._check_token(account)
        return list(self.calendars)

    async def create_event(self, account: CalendarAccount, payload: EventPushPayload) -> str:
        self._check_token(account)
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.created.append((account, payload))
        return f"remote-{len(self.created)}"

    async def delete_event(self, account: CalendarAccount, calendar_event_id: str) -> None:
        self._check_token(account)
        self.deleted.append(calendar_event_id)

    async def refresh_credentials(self, account: CalendarAccount) -> TokenGrant:
        self.refresh_calls.append(account.email)
        # Yield so concurrent callers can pile up behind the account lock.
        await asyncio.sleep(0)
        if self.grants:
            outcome = self.grants.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return TokenGrant(
            access_token=f"access-{len(self.refresh_calls) + 1}",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )

    async def shutdown(self) -> None:
        self.shutdown_called = True


@pytest.fixture
def google() -> FakeProvider:
    return FakeProvider(CalendarProviderKind.GOOGLE)


@pytest.fixture
def caldav() -> FakeProvider:
    return FakeProvider(CalendarProviderKind.CALDAV)


@pytest.fixture
def providers(google: FakeProvider, caldav: FakeProvider) -> ProviderSet:
    return ProviderSet([google, caldav])


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()
