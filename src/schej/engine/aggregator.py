"""Event aggregator: concurrent per-source fetch, then a single merge step."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from opentelemetry import trace

from schej.engine.errors import (
    CalendarProviderError,
    ErrorKind,
    InvalidInputError,
    RefreshDeniedError,
    UnauthorizedError,
    UnreachableError,
    error_kind_of,
    sanitize_message,
)
from schej.engine.models import Interval, SourceRef, User, ensure_aware
from schej.engine.providers.base import FetchRequest, ProviderSet
from schej.engine.registry import CalendarSource, enabled_sources
from schej.engine.tokens import TokenRefresher

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("schej.engine.aggregator")

DEFAULT_MAX_WORKERS = 8
DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class SourceError:
    """A sanitized per-source failure returned alongside partial results."""

    source: SourceRef
    kind: ErrorKind
    message: str
    error_type: str

    @classmethod
    def from_exception(cls, source: SourceRef, exc: BaseException) -> SourceError:
        return cls(
            source=source,
            kind=error_kind_of(exc),
            message=sanitize_message(exc),
            error_type=type(exc).__name__,
        )

    def to_dict(self) -> dict[str, str | None]:
        return {
            "account_email": self.source.account_email,
            "sub_calendar_id": self.source.sub_calendar_id,
            "kind": str(self.kind),
            "error": self.message,
            "error_type": self.error_type,
        }


@dataclass
class AggregationResult:
    intervals: list[Interval] = field(default_factory=list)
    errors: list[SourceError] = field(default_factory=list)
    source_count: int = 0

    @property
    def unavailable_count(self) -> int:
        return len({error.source for error in self.errors})


@dataclass
class _SourceOutcome:
    source: CalendarSource
    intervals: list[Interval] = field(default_factory=list)
    error: BaseException | None = None


def _dedupe_key_matches(kept: Interval, candidate: Interval) -> bool:
    if kept.source == candidate.source:
        return True
    if kept.uid and candidate.uid and kept.uid == candidate.uid:
        return True
    if kept.title and candidate.title:
        return kept.title.casefold() == candidate.title.casefold()
    return False


def merge_intervals(per_source: Sequence[Sequence[Interval]]) -> list[Interval]:
    """Deduplicate and order intervals from sources given in registry order.

    Two intervals are duplicates when they share start and end and come from
    the same source, carry the same UID, or carry the same title ignoring
    case. The first one seen wins. Output is sorted by start, then end,
    then source position.
    """
    kept: list[tuple[int, int, Interval]] = []
    by_span: dict[tuple[datetime, datetime], list[Interval]] = {}
    for position, intervals in enumerate(per_source):
        for sequence, interval in enumerate(intervals):
            span = (interval.start, interval.end)
            seen = by_span.setdefault(span, [])
            if any(_dedupe_key_matches(existing, interval) for existing in seen):
                continue
            seen.append(interval)
            kept.append((position, sequence, interval))
    kept.sort(key=lambda item: (item[2].start, item[2].end, item[0], item[1]))
    return [interval for _, _, interval in kept]


def filter_all_day(intervals: Iterable[Interval], include_all_day: bool) -> list[Interval]:
    if include_all_day:
        return list(intervals)
    return [interval for interval in intervals if not interval.all_day]


class EventAggregator:
    """Fans out one fetch per enabled source under a shared deadline."""

    def __init__(
        self,
        providers: ProviderSet,
        refresher: TokenRefresher,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        self._providers = providers
        self._refresher = refresher
        self._max_workers = max_workers
        self._timeout_s = timeout_s

    async def aggregate(
        self,
        user: User,
        time_min: datetime,
        time_max: datetime,
    ) -> AggregationResult:
        """Merged busy timeline plus per-source errors.

        All-day intervals are kept; callers filter with ``filter_all_day``.
        """
        time_min = ensure_aware(time_min)
        time_max = ensure_aware(time_max)
        if time_max < time_min:
            raise InvalidInputError(f"time_max {time_max} precedes time_min {time_min}")

        sources = enabled_sources(user)
        with tracer.start_as_current_span("schej.aggregate") as span:
            span.set_attribute("schej.user_id", user.id)
            span.set_attribute("schej.source_count", len(sources))
            outcomes = await self._fetch_all(user, sources, time_min, time_max)

            errors: list[SourceError] = []
            per_source: list[list[Interval]] = []
            for outcome in outcomes:
                if outcome.error is not None:
                    error = SourceError.from_exception(outcome.source.ref, outcome.error)
                    logger.warning(
                        "Calendar source %s unavailable (%s): %s",
                        outcome.source.ref,
                        error.kind,
                        error.message,
                    )
                    errors.append(error)
                    per_source.append([])
                else:
                    per_source.append(outcome.intervals)

            merged = merge_intervals(per_source)
            span.set_attribute("schej.interval_count", len(merged))
            span.set_attribute("schej.error_count", len(errors))
        return AggregationResult(intervals=merged, errors=errors, source_count=len(sources))

    async def _fetch_all(
        self,
        user: User,
        sources: list[CalendarSource],
        time_min: datetime,
        time_max: datetime,
    ) -> list[_SourceOutcome]:
        outcomes = [_SourceOutcome(source) for source in sources]
        if not sources:
            return outcomes

        semaphore = asyncio.Semaphore(self._max_workers)
        denied: set[str] = set()

        async def _run(outcome: _SourceOutcome) -> None:
            async with semaphore:
                try:
                    outcome.intervals = await self._fetch_source(
                        user, outcome.source, time_min, time_max, denied
                    )
                except CalendarProviderError as exc:
                    outcome.error = exc

        tasks = [asyncio.create_task(_run(outcome)) for outcome in outcomes]
        _, pending = await asyncio.wait(tasks, timeout=self._timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task, outcome in zip(tasks, outcomes, strict=True):
            if task in pending:
                outcome.intervals = []
                outcome.error = UnreachableError(
                    f"Calendar fetch timed out after {self._timeout_s:.1f}s"
                )
            elif not task.cancelled() and task.exception() is not None:
                # Programming errors propagate.
                raise task.exception()
        return outcomes

    async def _fetch_source(
        self,
        user: User,
        source: CalendarSource,
        time_min: datetime,
        time_max: datetime,
        denied: set[str],
    ) -> list[Interval]:
        email = source.account.email
        with tracer.start_as_current_span("schej.fetch_source") as span:
            span.set_attribute("schej.source.account", email)
            span.set_attribute("schej.source.sub_calendar", source.sub_calendar_id or "primary")
            span.set_attribute("schej.source.provider", str(source.account.provider))
            try:
                provider = self._providers.for_account(source.account)
                if email in denied:
                    raise RefreshDeniedError(f"Token refresh already denied for '{email}'")
                account = source.account
                if provider.supports_refresh:
                    account = await self._refresher.ensure_valid(user, email, denied=denied)
                try:
                    intervals = await provider.fetch_events(
                        FetchRequest(account, source.sub_calendar_id, source.tz),
                        time_min=time_min,
                        time_max=time_max,
                    )
                except UnauthorizedError:
                    if not provider.supports_refresh:
                        raise
                    logger.info("Access token rejected for %s; refreshing once", email)
                    account = await self._refresher.ensure_valid(
                        user,
                        email,
                        force=True,
                        stale_token=account.access_token,
                        denied=denied,
                    )
                    intervals = await provider.fetch_events(
                        FetchRequest(account, source.sub_calendar_id, source.tz),
                        time_min=time_min,
                        time_max=time_max,
                    )
            except CalendarProviderError as exc:
                span.set_status(trace.StatusCode.ERROR, str(exc.kind))
                span.set_attribute("schej.source.error_kind", str(exc.kind))
                raise
            span.set_attribute("schej.source.interval_count", len(intervals))
            return intervals
