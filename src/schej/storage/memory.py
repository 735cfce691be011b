"""In-memory document store for development and tests."""

from __future__ import annotations

from datetime import datetime

from schej.engine.errors import AlreadyFinalizedError, NotFoundError
from schej.engine.models import (
    CalendarAccount,
    Event,
    Remindee,
    Response,
    ScheduledEvent,
    SubCalendar,
    User,
    parse_participant_id,
)
from schej.storage.base import SchedulingStore


class InMemoryStore(SchedulingStore):
    """Keeps deep copies so callers never share state with the store."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._events: dict[str, Event] = {}

    def _user(self, user_id: str) -> User:
        try:
            return self._users[user_id]
        except KeyError:
            raise NotFoundError("user", user_id) from None

    def _event(self, event_id: str) -> Event:
        try:
            return self._events[event_id]
        except KeyError:
            raise NotFoundError("event", event_id) from None

    def _account(self, user_id: str, email: str) -> CalendarAccount:
        account = self._user(user_id).calendar_accounts.get(email)
        if account is None:
            raise NotFoundError("calendar account", f"{user_id}/{email}")
        return account

    async def get_user(self, user_id: str) -> User:
        return self._user(user_id).model_copy(deep=True)

    async def save_user(self, user: User) -> None:
        self._users[user.id] = user.model_copy(deep=True)

    async def get_event(self, event_id: str) -> Event:
        return self._event(event_id).model_copy(deep=True)

    async def save_event(self, event: Event) -> None:
        self._events[event.id] = event.model_copy(deep=True)

    async def list_events_for_user(self, user_id: str) -> list[Event]:
        return [
            event.model_copy(deep=True)
            for event in self._events.values()
            if event.owner_id == user_id or user_id in event.responses
        ]

    async def update_account_tokens(
        self,
        user_id: str,
        email: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        account = self._account(user_id, email)
        update: dict[str, object] = {
            "access_token": access_token,
            "access_token_expire_date": expires_at,
        }
        if refresh_token is not None:
            update["refresh_token"] = refresh_token
        self._users[user_id].calendar_accounts[email] = account.model_copy(update=update)

    async def update_sub_calendars(
        self,
        user_id: str,
        email: str,
        sub_calendars: dict[str, SubCalendar],
    ) -> None:
        account = self._account(user_id, email)
        copied = {key: value.model_copy() for key, value in sub_calendars.items()}
        self._users[user_id].calendar_accounts[email] = account.model_copy(
            update={"sub_calendars": copied}
        )

    async def set_response(self, event_id: str, participant_id: str, response: Response) -> None:
        self._event(event_id).responses[parse_participant_id(participant_id)] = (
            response.model_copy(deep=True)
        )

    async def set_scheduled_event(
        self,
        event_id: str,
        scheduled_event: ScheduledEvent | None,
        *,
        only_if_unset: bool = False,
    ) -> None:
        event = self._event(event_id)
        if only_if_unset and event.scheduled_event is not None:
            raise AlreadyFinalizedError(event_id)
        event.scheduled_event = (
            scheduled_event.model_copy() if scheduled_event is not None else None
        )

    async def set_remindees(self, event_id: str, remindees: list[Remindee]) -> None:
        self._event(event_id).remindees = [
            remindee.model_copy(deep=True) for remindee in remindees
        ]
