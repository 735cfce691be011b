"""Persistence collaborator contract for user and poll documents."""

from __future__ import annotations

import abc
from datetime import datetime

from schej.engine.models import Event, Remindee, Response, ScheduledEvent, SubCalendar, User


class SchedulingStore(abc.ABC):
    """CRUD by id plus the narrow field updates the engine performs.

    Lookups of a missing document raise ``NotFoundError``.
    """

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> User: ...

    @abc.abstractmethod
    async def save_user(self, user: User) -> None: ...

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> Event: ...

    @abc.abstractmethod
    async def save_event(self, event: Event) -> None: ...

    @abc.abstractmethod
    async def list_events_for_user(self, user_id: str) -> list[Event]:
        """Polls the user owns or has responded to."""
        ...

    @abc.abstractmethod
    async def update_account_tokens(
        self,
        user_id: str,
        email: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist refreshed credentials; a ``None`` refresh token keeps the stored one."""
        ...

    @abc.abstractmethod
    async def update_sub_calendars(
        self,
        user_id: str,
        email: str,
        sub_calendars: dict[str, SubCalendar],
    ) -> None: ...

    @abc.abstractmethod
    async def set_response(self, event_id: str, participant_id: str, response: Response) -> None:
        ...

    @abc.abstractmethod
    async def set_scheduled_event(
        self,
        event_id: str,
        scheduled_event: ScheduledEvent | None,
        *,
        only_if_unset: bool = False,
    ) -> None:
        """Write the scheduled event.

        With ``only_if_unset`` the write is skipped and ``AlreadyFinalizedError``
        raised when the stored poll is already finalized.
        """
        ...

    @abc.abstractmethod
    async def set_remindees(self, event_id: str, remindees: list[Remindee]) -> None: ...
