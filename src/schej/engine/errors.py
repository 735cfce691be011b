"""Error taxonomy for the calendar aggregation and availability engine.

Provider failures derive from ``CalendarProviderError`` and carry an
``ErrorKind`` so the aggregator can record them per source without aborting
the whole call. Input and lifecycle errors are raised straight to the caller.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from schej.engine.models import ScheduledEvent

MAX_ERROR_MESSAGE_LENGTH = 200


class ErrorKind(StrEnum):
    """Classification of a per-source provider failure."""

    UNAUTHORIZED = "unauthorized"
    REFRESH_DENIED = "refresh_denied"
    RATE_LIMITED = "rate_limited"
    UNREACHABLE = "unreachable"
    MALFORMED = "malformed"


class SchejError(RuntimeError):
    """Base error for the scheduling engine."""


class CalendarProviderError(SchejError):
    """Base error raised by provider clients and the token refresher."""

    kind: ErrorKind = ErrorKind.UNREACHABLE

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class UnauthorizedError(CalendarProviderError):
    """Provider rejected the credentials; recoverable by one refresh."""

    kind = ErrorKind.UNAUTHORIZED


class RefreshDeniedError(CalendarProviderError):
    """Refresh-token exchange was rejected; the account is unusable for this call."""

    kind = ErrorKind.REFRESH_DENIED


class RateLimitedError(CalendarProviderError):
    """Provider kept throttling after the bounded retries."""

    kind = ErrorKind.RATE_LIMITED


class UnreachableError(CalendarProviderError):
    """Transport failure, server error or timeout."""

    kind = ErrorKind.UNREACHABLE


class MalformedError(CalendarProviderError):
    """Provider returned data the normalizer cannot parse."""

    kind = ErrorKind.MALFORMED


class InvalidInputError(SchejError, ValueError):
    """Bad caller parameters, rejected before any I/O."""


class AlreadyFinalizedError(SchejError):
    """The poll already carries a scheduled event."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event '{event_id}' is already finalized")


class PushFailedError(SchejError):
    """The chosen slot was recorded but the calendar entry could not be created."""

    def __init__(self, scheduled_event: ScheduledEvent, cause: Exception) -> None:
        self.scheduled_event = scheduled_event
        self.cause = cause
        super().__init__(
            f"Scheduled slot recorded but calendar push failed: {sanitize_message(cause)}"
        )


class UnknownParticipantError(SchejError, KeyError):
    """No response exists for the requested participant."""

    def __init__(self, event_id: str, participant_id: str) -> None:
        self.event_id = event_id
        self.participant_id = participant_id
        super().__init__(f"Event '{event_id}' has no response for participant '{participant_id}'")

    def __str__(self) -> str:
        return str(self.args[0])


class StoreError(SchejError):
    """Persistence collaborator failure."""


class NotFoundError(StoreError):
    """Requested document does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")


def redact_credential_values(message: str) -> str:
    """Redact token-like values from an error message.

    Redaction is pattern-based because credentials live in user documents,
    not in process environment variables.
    """
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|password)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token|password)['"]?\s*:\s*)(['"]).*?\2""",  # noqa: E501
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|password)\s*:\s*([^\s,;]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # Authorization headers
    redacted = re.sub(r"(?i)\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", r"\1 [REDACTED]", redacted)
    return redacted


def sanitize_message(exc: BaseException | str) -> str:
    """Redact, collapse whitespace and truncate to ``MAX_ERROR_MESSAGE_LENGTH``."""
    raw = exc if isinstance(exc, str) else str(exc)
    redacted = redact_credential_values(raw)
    return " ".join(redacted.split())[:MAX_ERROR_MESSAGE_LENGTH]


def error_kind_of(exc: BaseException) -> ErrorKind:
    if isinstance(exc, CalendarProviderError):
        return exc.kind
    return ErrorKind.UNREACHABLE
