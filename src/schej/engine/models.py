"""Typed documents shared by the engine, the providers and the store.

Users and events are persisted as JSON documents; every model here
round-trips through ``model_dump(mode="json")`` / ``model_validate``.
Legacy documents that stored optional flags as ``true``/``false``/``null``
are accepted and normalized to ``Tristate``.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta, timezone, tzinfo
from enum import StrEnum
from typing import Any, NewType

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schej.engine.errors import InvalidInputError, UnknownParticipantError

ParticipantId = NewType("ParticipantId", str)

_PARTICIPANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def parse_participant_id(raw: Any) -> ParticipantId:
    """Validate a raw participant key (user id or guest name slug)."""
    if not isinstance(raw, str):
        raise InvalidInputError("participant id must be a string")
    normalized = raw.strip()
    if not normalized or _PARTICIPANT_ID_PATTERN.fullmatch(normalized) is None:
        raise InvalidInputError(f"Invalid participant id: {raw!r}")
    return ParticipantId(normalized)


def ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class Tristate(StrEnum):
    """Explicit three-valued flag: absent is not the same as false."""

    UNSET = "unset"
    TRUE = "true"
    FALSE = "false"

    @classmethod
    def coerce(cls, value: Any) -> Tristate:
        if value is None:
            return cls.UNSET
        if isinstance(value, Tristate):
            return value
        if isinstance(value, bool):
            return cls.TRUE if value else cls.FALSE
        if isinstance(value, str):
            return cls(value.strip().lower() or cls.UNSET)
        raise ValueError(f"Cannot interpret {value!r} as a tri-state flag")

    @property
    def is_true(self) -> bool:
        return self is Tristate.TRUE


class CalendarProviderKind(StrEnum):
    GOOGLE = "google"
    CALDAV = "caldav"


class CalDAVConnection(BaseModel):
    """Opaque connection parameters for a CalDAV server."""

    model_config = ConfigDict(extra="forbid")

    # None means the provider's configured default server.
    server_url: str | None = None
    username: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)

    @field_validator("server_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().rstrip("/") or None


class SubCalendar(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = ""
    enabled: Tristate = Tristate.UNSET

    @field_validator("enabled", mode="before")
    @classmethod
    def _coerce_enabled(cls, value: Any) -> Tristate:
        return Tristate.coerce(value)


class CalendarAccount(BaseModel):
    """One linked calendar account (a Google login or a CalDAV principal)."""

    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=1)
    picture: str | None = None
    enabled: Tristate = Tristate.UNSET
    provider: CalendarProviderKind = CalendarProviderKind.GOOGLE
    sub_calendars: dict[str, SubCalendar] | None = None
    access_token: str | None = Field(default=None, repr=False)
    access_token_expire_date: datetime | None = None
    refresh_token: str | None = Field(default=None, repr=False)
    timezone: str | None = None
    caldav: CalDAVConnection | None = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("email must be a non-empty string")
        return normalized

    @field_validator("enabled", mode="before")
    @classmethod
    def _coerce_enabled(cls, value: Any) -> Tristate:
        return Tristate.coerce(value)

    @field_validator("access_token_expire_date")
    @classmethod
    def _aware_expiry(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @model_validator(mode="after")
    def _require_caldav_connection(self) -> CalendarAccount:
        if self.provider == CalendarProviderKind.CALDAV and self.caldav is None:
            raise ValueError(f"CalDAV account '{self.email}' is missing connection parameters")
        return self


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    picture: str | None = None


class User(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    picture: str | None = None
    # Minutes, with the browser getTimezoneOffset() sign (UTC minus local).
    timezone_offset: int = 0
    calendar_accounts: dict[str, CalendarAccount] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _keys_match_account_emails(self) -> User:
        for key, account in self.calendar_accounts.items():
            if key != account.email:
                raise ValueError(
                    f"calendar_accounts key {key!r} does not match account email {account.email!r}"
                )
        return self

    @property
    def local_tz(self) -> tzinfo:
        return timezone(timedelta(minutes=-self.timezone_offset))

    def profile(self) -> UserProfile:
        return UserProfile(
            id=self.id,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            picture=self.picture,
        )


class SourceRef(BaseModel):
    """Identifies one queried calendar: an account plus optional sub-calendar."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    account_email: str
    # None means the account's primary calendar.
    sub_calendar_id: str | None = None

    def __str__(self) -> str:
        return f"{self.account_email}/{self.sub_calendar_id or 'primary'}"


class Interval(BaseModel):
    """Provider-agnostic busy interval."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    start: datetime
    end: datetime
    all_day: bool = False
    source: SourceRef
    title: str | None = None
    uid: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _end_not_before_start(self) -> Interval:
        if self.end < self.start:
            raise ValueError(f"Interval end {self.end} precedes start {self.start}")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


class AvailabilityInterval(BaseModel):
    """A free (or self-reported available) span."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> AvailabilityInterval:
        if self.end <= self.start:
            raise ValueError(f"Availability end {self.end} must be after start {self.start}")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class ResponseOrigin(StrEnum):
    SELF_REPORTED = "self_reported"
    CALENDAR = "calendar"


class Response(BaseModel):
    """One participant's availability for one poll."""

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    user_id: str | None = None
    user: UserProfile | None = None
    availability: list[AvailabilityInterval] = Field(default_factory=list)
    origin: ResponseOrigin = ResponseOrigin.SELF_REPORTED
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ScheduledEvent(BaseModel):
    """The finalized slot and, once pushed, the provider-side event id."""

    model_config = ConfigDict(extra="forbid")

    start: datetime
    end: datetime
    calendar_event_id: str | None = None
    calendar_account_email: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @property
    def is_pushed(self) -> bool:
        return self.calendar_event_id is not None


class Remindee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    task_ids: list[str] = Field(default_factory=list)
    responded: Tristate = Tristate.UNSET

    @field_validator("responded", mode="before")
    @classmethod
    def _coerce_responded(cls, value: Any) -> Tristate:
        return Tristate.coerce(value)


class EventType(StrEnum):
    SPECIFIC_DATES = "specific_dates"
    DOW = "dow"


class Event(BaseModel):
    """A scheduling poll."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    owner_id: str
    name: str = ""
    # Hours.
    duration: float | None = None
    dates: list[datetime] = Field(default_factory=list)
    # 0=Sunday .. 6=Saturday.
    days: list[int] = Field(default_factory=list)
    notifications_enabled: bool = False
    responses: dict[str, Response] = Field(default_factory=dict)
    scheduled_event: ScheduledEvent | None = None
    remindees: list[Remindee] = Field(default_factory=list)

    @field_validator("dates")
    @classmethod
    def _aware_dates(cls, value: list[datetime]) -> list[datetime]:
        return [ensure_aware(item) for item in value]

    @field_validator("responses")
    @classmethod
    def _valid_participant_keys(cls, value: dict[str, Response]) -> dict[str, Response]:
        for key in value:
            if _PARTICIPANT_ID_PATTERN.fullmatch(key) is None:
                raise ValueError(f"Invalid participant id key: {key!r}")
        return value

    @property
    def event_type(self) -> EventType:
        return EventType.DOW if self.days else EventType.SPECIFIC_DATES

    @property
    def is_finalized(self) -> bool:
        return self.scheduled_event is not None

    def response_for(self, participant: ParticipantId) -> Response:
        try:
            return self.responses[participant]
        except KeyError:
            raise UnknownParticipantError(self.id, participant) from None

    def put_response(self, participant: ParticipantId, response: Response) -> None:
        self.responses[parse_participant_id(participant)] = response


class DiscoveredCalendar(BaseModel):
    """A calendar reported by a provider's calendar listing."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    name: str = ""
    primary: bool = False
