"""Account registry: which calendars of a user are queried, and in what order."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from schej.engine.models import (
    CalendarAccount,
    DiscoveredCalendar,
    SourceRef,
    SubCalendar,
    Tristate,
    User,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarSource:
    """One (account, sub-calendar) pair selected for aggregation."""

    account: CalendarAccount
    sub_calendar_id: str | None
    position: int
    tz: tzinfo

    @property
    def ref(self) -> SourceRef:
        return SourceRef(account_email=self.account.email, sub_calendar_id=self.sub_calendar_id)


def _coerce_zoneinfo(name: str) -> tzinfo | None:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Ignoring unknown account timezone %r", name)
        return None


def account_timezone(user: User, account: CalendarAccount) -> tzinfo:
    """The account's declared zone, else the user's fixed offset."""
    if account.timezone:
        zone = _coerce_zoneinfo(account.timezone)
        if zone is not None:
            return zone
    if user.timezone_offset == 0:
        return UTC
    return user.local_tz


def enabled_sources(user: User) -> list[CalendarSource]:
    """Sources to query, ordered by account insertion then sub-calendar insertion.

    The account flag dominates: a disabled or unset account contributes
    nothing regardless of its sub-calendar flags. An account without a
    sub-calendar map is queried through its primary calendar only; with a
    map, only sub-calendars explicitly enabled are queried.
    """
    sources: list[CalendarSource] = []
    for account in user.calendar_accounts.values():
        if not account.enabled.is_true:
            continue
        tz = account_timezone(user, account)
        if account.sub_calendars is None:
            sources.append(CalendarSource(account, None, len(sources), tz))
            continue
        for sub_calendar_id, sub_calendar in account.sub_calendars.items():
            if sub_calendar.enabled.is_true:
                sources.append(CalendarSource(account, sub_calendar_id, len(sources), tz))
    return sources


def merge_discovered_calendars(
    account: CalendarAccount,
    discovered: list[DiscoveredCalendar],
) -> dict[str, SubCalendar]:
    """Reconcile a provider calendar listing with the stored toggles.

    Existing toggles are kept, new calendars start unset (not queried), and
    calendars the provider no longer reports are dropped. Order follows the
    stored map first, then newly discovered calendars in listing order.
    """
    existing = account.sub_calendars or {}
    discovered_by_id = {calendar.id: calendar for calendar in discovered}
    merged: dict[str, SubCalendar] = {}
    for sub_calendar_id, sub_calendar in existing.items():
        calendar = discovered_by_id.get(sub_calendar_id)
        if calendar is None:
            continue
        merged[sub_calendar_id] = SubCalendar(
            name=calendar.name or sub_calendar.name,
            enabled=sub_calendar.enabled,
        )
    for calendar in discovered:
        if calendar.id not in merged:
            merged[calendar.id] = SubCalendar(name=calendar.name, enabled=Tristate.UNSET)
    return merged
