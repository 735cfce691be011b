"""Scheduled event resolver: record the chosen slot, then push it to a calendar."""

from __future__ import annotations

import logging
from datetime import datetime

from schej.engine.errors import (
    AlreadyFinalizedError,
    CalendarProviderError,
    InvalidInputError,
    MalformedError,
    PushFailedError,
    UnauthorizedError,
    sanitize_message,
)
from schej.engine.models import (
    AvailabilityInterval,
    CalendarAccount,
    Event,
    ScheduledEvent,
    User,
    ensure_aware,
)
from schej.engine.providers.base import EventPushPayload, ProviderSet
from schej.engine.tokens import TokenRefresher
from schej.storage.base import SchedulingStore

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TITLE = "schej event"

Slot = AvailabilityInterval | tuple[datetime, datetime]


def _normalize_slot(slot: Slot) -> tuple[datetime, datetime]:
    if isinstance(slot, AvailabilityInterval):
        return slot.start, slot.end
    start, end = (ensure_aware(value) for value in slot)
    if end <= start:
        raise InvalidInputError(f"Chosen slot end {end} must be after start {start}")
    return start, end


def push_account(organizer: User) -> CalendarAccount | None:
    """The organizer's own-email account, else the first enabled account."""
    account = organizer.calendar_accounts.get(organizer.email)
    if account is not None:
        return account
    for candidate in organizer.calendar_accounts.values():
        if candidate.enabled.is_true:
            return candidate
    return None


class ScheduledEventResolver:
    def __init__(
        self,
        store: SchedulingStore,
        providers: ProviderSet,
        refresher: TokenRefresher,
    ) -> None:
        self._store = store
        self._providers = providers
        self._refresher = refresher

    @staticmethod
    def _require_owner(event: Event, organizer: User) -> None:
        if organizer.id != event.owner_id:
            raise InvalidInputError(
                f"User '{organizer.id}' is not the owner of event '{event.id}'"
            )

    @staticmethod
    def _build_payload(
        event: Event,
        organizer: User,
        scheduled: ScheduledEvent,
    ) -> EventPushPayload:
        attendees: list[str] = []
        for response in event.responses.values():
            email = response.user.email if response.user is not None else ""
            if email and email != organizer.email and email not in attendees:
                attendees.append(email)
        return EventPushPayload(
            title=event.name or DEFAULT_EVENT_TITLE,
            start=scheduled.start,
            end=scheduled.end,
            uid=f"schej-{event.id}-{int(scheduled.start.timestamp())}",
            attendees=attendees,
        )

    async def _push(self, event: Event, organizer: User, scheduled: ScheduledEvent) -> str:
        email = scheduled.calendar_account_email
        account = organizer.calendar_accounts.get(email) if email else None
        if account is None:
            raise MalformedError(f"Organizer '{organizer.id}' has no calendar account to push to")
        provider = self._providers.for_account(account)
        payload = self._build_payload(event, organizer, scheduled)
        if provider.supports_refresh:
            account = await self._refresher.ensure_valid(organizer, account.email)
        try:
            return await provider.create_event(account, payload)
        except UnauthorizedError:
            if not provider.supports_refresh:
                raise
            account = await self._refresher.ensure_valid(
                organizer,
                account.email,
                force=True,
                stale_token=account.access_token,
            )
            return await provider.create_event(account, payload)

    async def _push_and_store(
        self,
        event: Event,
        organizer: User,
        scheduled: ScheduledEvent,
    ) -> ScheduledEvent:
        try:
            calendar_event_id = await self._push(event, organizer, scheduled)
        except CalendarProviderError as exc:
            logger.warning(
                "Calendar push failed for event %s (slot kept): %s",
                event.id,
                sanitize_message(exc),
            )
            raise PushFailedError(scheduled, exc) from exc
        pushed = scheduled.model_copy(update={"calendar_event_id": calendar_event_id})
        await self._store.set_scheduled_event(event.id, pushed)
        event.scheduled_event = pushed
        logger.info("Pushed event %s to calendar as %s", event.id, calendar_event_id)
        return pushed

    async def finalize(self, event: Event, slot: Slot, organizer: User) -> ScheduledEvent:
        """Record *slot* on the poll and create the organizer's calendar entry.

        Raises ``AlreadyFinalizedError`` without touching anything when the
        poll is finalized, and ``PushFailedError`` (carrying the recorded
        scheduled event) when only the calendar push failed.
        """
        if event.is_finalized:
            raise AlreadyFinalizedError(event.id)
        self._require_owner(event, organizer)
        start, end = _normalize_slot(slot)

        account = push_account(organizer)
        scheduled = ScheduledEvent(
            start=start,
            end=end,
            calendar_account_email=account.email if account is not None else None,
        )
        await self._store.set_scheduled_event(event.id, scheduled, only_if_unset=True)
        event.scheduled_event = scheduled
        logger.info("Recorded scheduled slot for event %s: %s - %s", event.id, start, end)
        return await self._push_and_store(event, organizer, scheduled)

    async def retry_push(self, event: Event, organizer: User) -> ScheduledEvent:
        """Push a recorded slot whose earlier push failed."""
        self._require_owner(event, organizer)
        scheduled = event.scheduled_event
        if scheduled is None:
            raise InvalidInputError(f"Event '{event.id}' is not finalized")
        if scheduled.is_pushed:
            return scheduled
        if scheduled.calendar_account_email is None:
            account = push_account(organizer)
            if account is not None:
                scheduled = scheduled.model_copy(update={"calendar_account_email": account.email})
        return await self._push_and_store(event, organizer, scheduled)

    async def cancel(self, event: Event, organizer: User) -> None:
        """Delete the pushed entry, if any, and clear the scheduled event."""
        self._require_owner(event, organizer)
        scheduled = event.scheduled_event
        if scheduled is None:
            raise InvalidInputError(f"Event '{event.id}' is not finalized")
        if scheduled.is_pushed and scheduled.calendar_account_email:
            account = organizer.calendar_accounts.get(scheduled.calendar_account_email)
            if account is None:
                logger.warning(
                    "Account %s for event %s is gone; clearing without deleting the entry",
                    scheduled.calendar_account_email,
                    event.id,
                )
            else:
                provider = self._providers.for_account(account)
                if provider.supports_refresh:
                    account = await self._refresher.ensure_valid(organizer, account.email)
                assert scheduled.calendar_event_id is not None
                await provider.delete_event(account, scheduled.calendar_event_id)
        await self._store.set_scheduled_event(event.id, None)
        event.scheduled_event = None
        logger.info("Cancelled scheduled event for %s", event.id)
