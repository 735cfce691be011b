"""PostgreSQL document store: one JSONB document per user and per poll.

Field-level writes go through ``jsonb_set`` with parameterized paths so a
token refresh never rewrites a concurrently updated response, and the
first-finalization guard is a single conditional UPDATE.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

import asyncpg

from schej.engine.errors import AlreadyFinalizedError, NotFoundError, StoreError
from schej.engine.models import (
    Event,
    Remindee,
    Response,
    ScheduledEvent,
    SubCalendar,
    User,
    parse_participant_id,
)
from schej.storage.base import SchedulingStore

logger = logging.getLogger(__name__)


def _rows_affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


def _decode(document: Any) -> dict[str, Any]:
    if isinstance(document, str):
        return json.loads(document)
    return dict(document)


class PostgresStore(SchedulingStore):
    """Store backed by the ``users`` and ``events`` tables.

    *pool* is an ``asyncpg.Pool`` or anything exposing the same
    ``fetchrow``/``fetch``/``fetchval``/``execute`` coroutines (``Database``
    proxies them).
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def _execute(self, query: str, *args: Any) -> str:
        try:
            return await self._pool.execute(query, *args)
        except asyncpg.PostgresError as exc:
            raise StoreError(f"Store write failed: {exc}") from exc

    # -- Users ----------------------------------------------------------------

    async def get_user(self, user_id: str) -> User:
        row = await self._pool.fetchrow("SELECT document FROM users WHERE id = $1", user_id)
        if row is None:
            raise NotFoundError("user", user_id)
        return User.model_validate(_decode(row["document"]))

    async def save_user(self, user: User) -> None:
        await self._execute(
            """
            INSERT INTO users (id, email, document, updated_at)
            VALUES ($1, $2, $3::jsonb, now())
            ON CONFLICT (id) DO UPDATE
            SET email = EXCLUDED.email,
                document = EXCLUDED.document,
                updated_at = now()
            """,
            user.id,
            user.email,
            user.model_dump_json(),
        )

    async def update_account_tokens(
        self,
        user_id: str,
        email: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        patch: dict[str, Any] = {
            "access_token": access_token,
            "access_token_expire_date": expires_at.isoformat(),
        }
        if refresh_token is not None:
            patch["refresh_token"] = refresh_token
        status = await self._execute(
            """
            UPDATE users
            SET document = jsonb_set(
                    document,
                    ARRAY['calendar_accounts', $2::text],
                    (document -> 'calendar_accounts' -> $2::text) || $3::jsonb
                ),
                updated_at = now()
            WHERE id = $1 AND document -> 'calendar_accounts' ? $2::text
            """,
            user_id,
            email,
            json.dumps(patch),
        )
        if _rows_affected(status) == 0:
            raise NotFoundError("calendar account", f"{user_id}/{email}")

    async def update_sub_calendars(
        self,
        user_id: str,
        email: str,
        sub_calendars: dict[str, SubCalendar],
    ) -> None:
        payload = {key: value.model_dump(mode="json") for key, value in sub_calendars.items()}
        status = await self._execute(
            """
            UPDATE users
            SET document = jsonb_set(
                    document,
                    ARRAY['calendar_accounts', $2::text, 'sub_calendars'],
                    $3::jsonb
                ),
                updated_at = now()
            WHERE id = $1 AND document -> 'calendar_accounts' ? $2::text
            """,
            user_id,
            email,
            json.dumps(payload),
        )
        if _rows_affected(status) == 0:
            raise NotFoundError("calendar account", f"{user_id}/{email}")

    # -- Events ---------------------------------------------------------------

    async def get_event(self, event_id: str) -> Event:
        row = await self._pool.fetchrow("SELECT document FROM events WHERE id = $1", event_id)
        if row is None:
            raise NotFoundError("event", event_id)
        return Event.model_validate(_decode(row["document"]))

    async def save_event(self, event: Event) -> None:
        await self._execute(
            """
            INSERT INTO events (id, owner_id, document, updated_at)
            VALUES ($1, $2, $3::jsonb, now())
            ON CONFLICT (id) DO UPDATE
            SET owner_id = EXCLUDED.owner_id,
                document = EXCLUDED.document,
                updated_at = now()
            """,
            event.id,
            event.owner_id,
            event.model_dump_json(),
        )

    async def list_events_for_user(self, user_id: str) -> list[Event]:
        rows = await self._pool.fetch(
            """
            SELECT document FROM events
            WHERE owner_id = $1 OR document -> 'responses' ? $1
            ORDER BY updated_at DESC, id
            """,
            user_id,
        )
        return [Event.model_validate(_decode(row["document"])) for row in rows]

    async def _update_event_field(self, event_id: str, path: list[str], value: Any) -> None:
        status = await self._execute(
            """
            UPDATE events
            SET document = jsonb_set(document, $2::text[], $3::jsonb),
                updated_at = now()
            WHERE id = $1
            """,
            event_id,
            path,
            json.dumps(value),
        )
        if _rows_affected(status) == 0:
            raise NotFoundError("event", event_id)

    async def set_response(self, event_id: str, participant_id: str, response: Response) -> None:
        await self._update_event_field(
            event_id,
            ["responses", parse_participant_id(participant_id)],
            response.model_dump(mode="json"),
        )

    async def set_scheduled_event(
        self,
        event_id: str,
        scheduled_event: ScheduledEvent | None,
        *,
        only_if_unset: bool = False,
    ) -> None:
        value = scheduled_event.model_dump(mode="json") if scheduled_event is not None else None
        if not only_if_unset:
            await self._update_event_field(event_id, ["scheduled_event"], value)
            return

        status = await self._execute(
            """
            UPDATE events
            SET document = jsonb_set(document, '{scheduled_event}', $2::jsonb),
                updated_at = now()
            WHERE id = $1
              AND coalesce(document -> 'scheduled_event', 'null'::jsonb) = 'null'::jsonb
            """,
            event_id,
            json.dumps(value),
        )
        if _rows_affected(status) == 0:
            exists = await self._pool.fetchval("SELECT 1 FROM events WHERE id = $1", event_id)
            if exists is None:
                raise NotFoundError("event", event_id)
            logger.info("Event %s was finalized concurrently; keeping the first slot", event_id)
            raise AlreadyFinalizedError(event_id)

    async def set_remindees(self, event_id: str, remindees: list[Remindee]) -> None:
        await self._update_event_field(
            event_id,
            ["remindees"],
            [remindee.model_dump(mode="json") for remindee in remindees],
        )
