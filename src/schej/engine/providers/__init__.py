"""Calendar provider clients."""

from schej.engine.providers.base import (
    CalendarProvider,
    EventPushPayload,
    FetchRequest,
    ProviderSet,
    TokenGrant,
)
from schej.engine.providers.caldav import CalDAVProvider
from schej.engine.providers.google import GoogleCalendarProvider

__all__ = [
    "CalDAVProvider",
    "CalendarProvider",
    "EventPushPayload",
    "FetchRequest",
    "GoogleCalendarProvider",
    "ProviderSet",
    "TokenGrant",
]
