"""Engine facade: the inbound operations the routing layer calls."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry import trace

from schej.core.logging import set_user_context
from schej.core.telemetry import tag_user_span
from schej.engine.aggregator import AggregationResult, EventAggregator, SourceError
from schej.engine.availability import AvailabilityResolver
from schej.engine.errors import InvalidInputError, UnauthorizedError
from schej.engine.finalize import ScheduledEventResolver, Slot
from schej.engine.models import (
    AvailabilityInterval,
    Event,
    Interval,
    ParticipantId,
    Response,
    ResponseOrigin,
    ScheduledEvent,
    SubCalendar,
    Tristate,
    User,
    ensure_aware,
    parse_participant_id,
)
from schej.engine.providers.base import ProviderSet
from schej.engine.registry import merge_discovered_calendars
from schej.engine.tokens import TokenRefresher
from schej.storage.base import SchedulingStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("schej.engine.service")


@dataclass
class CalendarView:
    """Free/busy timeline for one user plus the sources that could not be read."""

    intervals: list[Interval] = field(default_factory=list)
    errors: list[SourceError] = field(default_factory=list)
    source_count: int = 0

    @property
    def unavailable_count(self) -> int:
        return len({error.source for error in self.errors})

    def to_dict(self) -> dict[str, Any]:
        return {
            "intervals": [interval.model_dump(mode="json") for interval in self.intervals],
            "errors": [error.to_dict() for error in self.errors],
            "source_count": self.source_count,
            "unavailable_count": self.unavailable_count,
        }


@dataclass
class UserEvents:
    owned: list[Event] = field(default_factory=list)
    joined: list[Event] = field(default_factory=list)


class SchedulingEngine:
    def __init__(
        self,
        store: SchedulingStore,
        aggregator: EventAggregator,
        resolver: AvailabilityResolver,
        finalizer: ScheduledEventResolver,
        *,
        providers: ProviderSet,
        refresher: TokenRefresher,
        include_all_day: bool = True,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._resolver = resolver
        self._finalizer = finalizer
        self._providers = providers
        self._refresher = refresher
        self._include_all_day = include_all_day
        self._response_locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _response_lock(self, event_id: str, participant: ParticipantId) -> asyncio.Lock:
        key = (event_id, participant)
        lock = self._response_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._response_locks[key] = lock
        return lock

    # -- Free/busy ------------------------------------------------------------

    async def get_calendar(
        self,
        user: User,
        time_min: datetime,
        time_max: datetime,
        *,
        include_all_day: bool | None = None,
    ) -> CalendarView:
        set_user_context(user.id)
        include = self._include_all_day if include_all_day is None else include_all_day
        result = await self._aggregator.aggregate(user, time_min, time_max)
        intervals = self._resolver.project(
            result.intervals,
            include_all_day=include,
            time_min=time_min,
            time_max=time_max,
        )
        if result.errors:
            logger.info(
                "Calendar for user %s is partial: %d of %d sources unavailable",
                user.id,
                result.unavailable_count,
                result.source_count,
            )
        return CalendarView(
            intervals=intervals,
            errors=result.errors,
            source_count=result.source_count,
        )

    # -- Responses ------------------------------------------------------------

    async def resolve_availability(
        self,
        event_id: str,
        participant: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        include_all_day: bool | None = None,
        recompute: bool = False,
    ) -> Response:
        """Fill the participant's response from their calendars.

        A self-reported response is left untouched unless ``recompute``.
        """
        pid = parse_participant_id(participant)
        include = self._include_all_day if include_all_day is None else include_all_day
        set_user_context(pid)
        async with self._response_lock(event_id, pid):
            event = await self._store.get_event(event_id)
            self._resolver.validate_poll(event)
            existing = event.responses.get(pid)
            if (
                existing is not None
                and existing.origin == ResponseOrigin.SELF_REPORTED
                and not recompute
            ):
                logger.debug("Keeping self-reported response of %s on %s", pid, event_id)
                return existing
            if event.is_finalized:
                logger.info("Event %s is finalized; response update is advisory", event_id)

            user = await self._store.get_user(pid)
            tz = user.local_tz
            windows = self._resolver.candidate_windows(
                event, tz, time_min=time_min, time_max=time_max
            )
            if not windows:
                result = AggregationResult()
            else:
                with tracer.start_as_current_span("schej.resolve_availability") as span:
                    tag_user_span(span, pid)
                    span.set_attribute("schej.event_id", event_id)
                    span.set_attribute("schej.window_count", len(windows))
                    result = await self._aggregator.aggregate(
                        user, windows[0][0], windows[-1][1]
                    )
            if result.errors:
                logger.warning(
                    "Resolving %s on %s with %d unavailable calendar sources",
                    pid,
                    event_id,
                    result.unavailable_count,
                )
            response = self._resolver.resolve(
                event,
                pid,
                result.intervals,
                tz,
                include_all_day=include,
                time_min=time_min,
                time_max=time_max,
                recompute=recompute,
                name=" ".join(part for part in (user.first_name, user.last_name) if part),
                user=user.profile(),
            )
            await self._store.set_response(event.id, pid, response)
            event.put_response(pid, response)
            await self._mark_remindee_responded(event, user.email)
            return response

    async def resolve_all(
        self,
        event_id: str,
        participants: Sequence[str],
        **options: Any,
    ) -> dict[str, Response]:
        """Resolve independent participants concurrently."""
        pids = [parse_participant_id(participant) for participant in participants]
        responses = await asyncio.gather(
            *(self.resolve_availability(event_id, pid, **options) for pid in pids)
        )
        return dict(zip(pids, responses, strict=True))

    async def submit_response(
        self,
        event_id: str,
        participant: str,
        availability: Iterable[AvailabilityInterval | datetime],
        *,
        name: str = "",
        user: User | None = None,
    ) -> Response:
        """Store a self-reported response, replacing any earlier one."""
        pid = parse_participant_id(participant)
        if user is not None and user.id != pid:
            raise InvalidInputError(f"Participant '{pid}' does not match user '{user.id}'")
        async with self._response_lock(event_id, pid):
            event = await self._store.get_event(event_id)
            if event.is_finalized:
                logger.info("Event %s is finalized; response update is advisory", event_id)
            response = self._resolver.explicit_response(
                availability,
                name=name,
                user=user.profile() if user is not None else None,
            )
            await self._store.set_response(event.id, pid, response)
            event.put_response(pid, response)
            if user is not None:
                await self._mark_remindee_responded(event, user.email)
            return response

    async def _mark_remindee_responded(self, event: Event, email: str) -> None:
        if not email or not event.remindees:
            return
        wanted = email.casefold()
        changed = False
        remindees = []
        for remindee in event.remindees:
            if remindee.email.casefold() == wanted and not remindee.responded.is_true:
                remindee = remindee.model_copy(update={"responded": Tristate.TRUE})
                changed = True
            remindees.append(remindee)
        if changed:
            await self._store.set_remindees(event.id, remindees)
            event.remindees = remindees

    # -- Finalization ---------------------------------------------------------

    async def finalize_event(self, event_id: str, slot: Slot, organizer: User) -> ScheduledEvent:
        set_user_context(organizer.id)
        event = await self._store.get_event(event_id)
        return await self._finalizer.finalize(event, slot, organizer)

    async def retry_push(self, event_id: str, organizer: User) -> ScheduledEvent:
        set_user_context(organizer.id)
        event = await self._store.get_event(event_id)
        return await self._finalizer.retry_push(event, organizer)

    async def cancel_scheduled_event(self, event_id: str, organizer: User) -> None:
        set_user_context(organizer.id)
        event = await self._store.get_event(event_id)
        await self._finalizer.cancel(event, organizer)

    # -- User documents -------------------------------------------------------

    async def list_user_events(self, user_id: str) -> UserEvents:
        """Polls the user owns and polls they joined, without response payloads."""
        result = UserEvents()
        for event in await self._store.list_events_for_user(user_id):
            stripped = event.model_copy(update={"responses": {}})
            if event.owner_id == user_id:
                result.owned.append(stripped)
            else:
                result.joined.append(stripped)
        return result

    async def refresh_sub_calendars(self, user: User, email: str) -> dict[str, SubCalendar]:
        """Re-list the account's calendars and persist the reconciled toggles."""
        account = user.calendar_accounts.get(email)
        if account is None:
            raise InvalidInputError(f"User '{user.id}' has no calendar account '{email}'")
        provider = self._providers.for_account(account)
        if provider.supports_refresh:
            account = await self._refresher.ensure_valid(user, email)
        try:
            discovered = await provider.list_calendars(account)
        except UnauthorizedError:
            if not provider.supports_refresh:
                raise
            account = await self._refresher.ensure_valid(
                user, email, force=True, stale_token=account.access_token
            )
            discovered = await provider.list_calendars(account)

        merged = merge_discovered_calendars(account, discovered)
        await self._store.update_sub_calendars(user.id, email, merged)
        user.calendar_accounts[email] = account.model_copy(update={"sub_calendars": merged})
        logger.info("Account %s now lists %d sub-calendars", email, len(merged))
        return merged


def parse_time_bound(value: str | datetime) -> datetime:
    """Parse an RFC3339 query bound as the routing layer delivers it."""
    if isinstance(value, datetime):
        return ensure_aware(value)
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        return ensure_aware(datetime.fromisoformat(normalized))
    except ValueError as exc:
        raise InvalidInputError(f"Invalid RFC3339 time bound: {value!r}") from exc
