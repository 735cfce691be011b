"""Availability resolver: free/busy projection and poll intersection.

Everything here is pure and synchronous; the service layer performs the
I/O and the per-participant locking around it.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from schej.engine.aggregator import filter_all_day
from schej.engine.errors import InvalidInputError
from schej.engine.models import (
    AvailabilityInterval,
    Event,
    EventType,
    Interval,
    ParticipantId,
    Response,
    ResponseOrigin,
    UserProfile,
    ensure_aware,
)

DEFAULT_SLOT_MINUTES = 15

Window = tuple[datetime, datetime]


def _local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(), tzinfo=tz)


def _clip(window: Window, time_min: datetime | None, time_max: datetime | None) -> Window | None:
    start, end = window
    if time_min is not None and start < time_min:
        start = time_min
    if time_max is not None and end > time_max:
        end = time_max
    if end <= start:
        return None
    return start, end


def merge_spans(spans: Iterable[Window]) -> list[Window]:
    """Union overlapping or touching spans."""
    merged: list[Window] = []
    for start, end in sorted(spans):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
            continue
        merged.append((start, end))
    return merged


class AvailabilityResolver:
    def __init__(self, slot_minutes: int = DEFAULT_SLOT_MINUTES) -> None:
        if slot_minutes <= 0:
            raise ValueError("slot_minutes must be positive")
        self._slot = timedelta(minutes=slot_minutes)

    @property
    def slot(self) -> timedelta:
        return self._slot

    @staticmethod
    def validate_poll(event: Event) -> timedelta:
        """Reject unusable poll parameters and return the required duration."""
        if event.duration is None:
            raise InvalidInputError(f"Event '{event.id}' has no duration")
        if event.duration <= 0:
            raise InvalidInputError(
                f"Event '{event.id}' duration must be positive, got {event.duration}"
            )
        invalid_days = [day for day in event.days if not 0 <= day <= 6]
        if invalid_days:
            raise InvalidInputError(
                f"Event '{event.id}' has weekdays outside 0..6: {sorted(invalid_days)}"
            )
        if not event.days and not event.dates:
            raise InvalidInputError(f"Event '{event.id}' has neither dates nor days of week")
        return timedelta(hours=event.duration)

    @staticmethod
    def project(
        intervals: Sequence[Interval],
        *,
        include_all_day: bool,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Interval]:
        """The merged timeline restricted and clipped to ``[time_min, time_max]``."""
        time_min = ensure_aware(time_min)
        time_max = ensure_aware(time_max)
        if time_max < time_min:
            raise InvalidInputError(f"time_max {time_max} precedes time_min {time_min}")
        projected: list[Interval] = []
        for interval in filter_all_day(intervals, include_all_day):
            if interval.start == interval.end:
                if time_min <= interval.start <= time_max:
                    projected.append(interval)
                continue
            if not interval.overlaps(time_min, time_max):
                continue
            start = max(interval.start, time_min)
            end = min(interval.end, time_max)
            if (start, end) != (interval.start, interval.end):
                interval = interval.model_copy(update={"start": start, "end": end})
            projected.append(interval)
        return projected

    def candidate_windows(
        self,
        event: Event,
        tz: tzinfo,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> list[Window]:
        """Local whole-day windows the poll asks about, clipped to the query range.

        Specific-date polls use the participant-local day of each date.
        Days-of-week polls need a query range and yield every local date in
        ``[time_min, time_max)`` whose weekday (0=Sunday) is listed.
        """
        time_min = ensure_aware(time_min) if time_min is not None else None
        time_max = ensure_aware(time_max) if time_max is not None else None
        if time_min is not None and time_max is not None and time_max < time_min:
            raise InvalidInputError(f"time_max {time_max} precedes time_min {time_min}")

        if event.event_type == EventType.DOW:
            if time_min is None or time_max is None:
                raise InvalidInputError("Days-of-week polls need a time_min/time_max query range")
            wanted = set(event.days)
            first = time_min.astimezone(tz).date()
            last = (time_max - timedelta(microseconds=1)).astimezone(tz).date()
            days: list[date] = []
            current = first
            while current <= last:
                if (current.weekday() + 1) % 7 in wanted:
                    days.append(current)
                current += timedelta(days=1)
        else:
            # Whole local day per date, not [date, date + duration hours].
            days = sorted({candidate.astimezone(tz).date() for candidate in event.dates})

        windows: list[Window] = []
        for day in days:
            window = (_local_midnight(day, tz), _local_midnight(day + timedelta(days=1), tz))
            clipped = _clip(window, time_min, time_max)
            if clipped is not None:
                windows.append(clipped)
        return windows

    @staticmethod
    def free_slots(
        busy: Sequence[Interval],
        windows: Sequence[Window],
        duration: timedelta,
    ) -> list[AvailabilityInterval]:
        """Sub-intervals of each window with no busy overlap, at least *duration* long."""
        if duration <= timedelta(0):
            raise InvalidInputError("duration must be positive")
        blocked = merge_spans(
            (interval.start, interval.end) for interval in busy if interval.end > interval.start
        )
        free: list[AvailabilityInterval] = []
        for window_start, window_end in windows:
            cursor = window_start
            for busy_start, busy_end in blocked:
                if busy_end <= cursor:
                    continue
                if busy_start >= window_end:
                    break
                if busy_start - cursor >= duration:
                    free.append(AvailabilityInterval(start=cursor, end=busy_start))
                cursor = max(cursor, busy_end)
                if cursor >= window_end:
                    break
            if window_end - cursor >= duration:
                free.append(AvailabilityInterval(start=cursor, end=window_end))
        return free

    def resolve(
        self,
        event: Event,
        participant: ParticipantId,
        busy: Sequence[Interval],
        tz: tzinfo,
        *,
        include_all_day: bool = True,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        recompute: bool = False,
        name: str = "",
        user: UserProfile | None = None,
    ) -> Response:
        """Calendar-derived response for *participant*.

        An existing self-reported response is returned unchanged unless
        ``recompute`` is set.
        """
        duration = self.validate_poll(event)
        existing = event.responses.get(participant)
        if (
            existing is not None
            and existing.origin == ResponseOrigin.SELF_REPORTED
            and not recompute
        ):
            return existing

        windows = self.candidate_windows(event, tz, time_min=time_min, time_max=time_max)
        free = self.free_slots(filter_all_day(busy, include_all_day), windows, duration)
        return Response(
            name=name or (existing.name if existing is not None else ""),
            user_id=user.id if user is not None else (existing.user_id if existing else None),
            user=user or (existing.user if existing is not None else None),
            availability=free,
            origin=ResponseOrigin.CALENDAR,
            updated_at=datetime.now(UTC),
        )

    def explicit_response(
        self,
        availability: Iterable[AvailabilityInterval | datetime],
        *,
        name: str = "",
        user: UserProfile | None = None,
    ) -> Response:
        """Self-reported response; bare time points each stand for one slot."""
        spans: list[Window] = []
        for item in availability:
            if isinstance(item, AvailabilityInterval):
                spans.append((item.start, item.end))
            elif isinstance(item, datetime):
                point = ensure_aware(item)
                spans.append((point, point + self._slot))
            else:
                raise InvalidInputError(f"Unsupported availability entry: {item!r}")
        return Response(
            name=name,
            user_id=user.id if user is not None else None,
            user=user,
            availability=[
                AvailabilityInterval(start=start, end=end) for start, end in merge_spans(spans)
            ],
            origin=ResponseOrigin.SELF_REPORTED,
            updated_at=datetime.now(UTC),
        )
