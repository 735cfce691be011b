"""Tests for recording a chosen slot and pushing it to the organizer's calendar."""

from __future__ import annotations

import pytest

from schej.engine.errors import (
    AlreadyFinalizedError,
    InvalidInputError,
    MalformedError,
    PushFailedError,
    UnreachableError,
)
from schej.engine.finalize import DEFAULT_EVENT_TITLE, ScheduledEventResolver, push_account
from schej.engine.models import (
    AvailabilityInterval,
    CalendarProviderKind,
    Event,
    Response,
    ScheduledEvent,
    UserProfile,
)
from schej.engine.tokens import TokenRefresher
from tests.conftest import T0, at, make_account, make_user

pytestmark = pytest.mark.unit

OWNER_EMAIL = "alice@example.com"


@pytest.fixture
def finalizer(store, providers) -> ScheduledEventResolver:
    return ScheduledEventResolver(store, providers, TokenRefresher(store, providers))


@pytest.fixture
async def organizer(store):
    user = make_user(accounts=[make_account(OWNER_EMAIL)])
    await store.save_user(user)
    return user


@pytest.fixture
async def event(store) -> Event:
    poll = Event(
        id="e1",
        owner_id="alice",
        name="Planning",
        duration=1,
        dates=[T0],
        responses={
            "bob": Response(
                name="Bob",
                user_id="bob",
                user=UserProfile(id="bob", email="bob@example.com"),
            ),
            "alice": Response(
                name="Alice",
                user_id="alice",
                user=UserProfile(id="alice", email=OWNER_EMAIL),
            ),
            "guest": Response(name="Guest"),
        },
    )
    await store.save_event(poll)
    return poll


class TestPushAccount:
    def test_prefers_own_email_account(self):
        user = make_user(accounts=[make_account("other@example.com"), make_account(OWNER_EMAIL)])
        assert push_account(user).email == OWNER_EMAIL

    def test_falls_back_to_first_enabled(self):
        user = make_user(
            accounts=[
                make_account("off@example.com", enabled=False),
                make_account("on@example.com"),
            ]
        )
        assert push_account(user).email == "on@example.com"

    def test_none_without_usable_accounts(self):
        assert push_account(make_user()) is None


class TestFinalize:
    async def test_records_and_pushes(self, finalizer, store, google, organizer, event):
        scheduled = await finalizer.finalize(event, (at(9), at(10)), organizer)

        assert (scheduled.start, scheduled.end) == (at(9), at(10))
        assert scheduled.calendar_event_id == "remote-1"
        assert scheduled.calendar_account_email == OWNER_EMAIL
        (account, payload) = google.created[0]
        assert account.email == OWNER_EMAIL
        assert payload.title == "Planning"
        assert payload.attendees == ["bob@example.com"]
        assert payload.uid == f"schej-e1-{int(at(9).timestamp())}"
        stored = await store.get_event("e1")
        assert stored.scheduled_event == scheduled
        assert event.scheduled_event == scheduled

    async def test_accepts_availability_interval_slot(self, finalizer, organizer, event):
        scheduled = await finalizer.finalize(
            event, AvailabilityInterval(start=at(13), end=at(14)), organizer
        )
        assert scheduled.start == at(13)

    async def test_untitled_poll_gets_default_title(self, finalizer, google, organizer, store):
        poll = Event(id="e2", owner_id="alice", duration=1, dates=[T0])
        await store.save_event(poll)
        await finalizer.finalize(poll, (at(9), at(10)), organizer)
        assert google.created[0][1].title == DEFAULT_EVENT_TITLE

    async def test_second_finalize_is_rejected(self, finalizer, google, organizer, event):
        await finalizer.finalize(event, (at(9), at(10)), organizer)
        with pytest.raises(AlreadyFinalizedError):
            await finalizer.finalize(event, (at(11), at(12)), organizer)
        assert len(google.created) == 1

    async def test_stale_copy_loses_the_race(self, finalizer, google, store, organizer, event):
        stale = await store.get_event("e1")
        await finalizer.finalize(event, (at(9), at(10)), organizer)

        with pytest.raises(AlreadyFinalizedError):
            await finalizer.finalize(stale, (at(11), at(12)), organizer)

        assert (await store.get_event("e1")).scheduled_event.start == at(9)
        assert len(google.created) == 1

    async def test_only_owner_may_finalize(self, finalizer, store, event):
        intruder = make_user("mallory", email="m@example.com")
        with pytest.raises(InvalidInputError, match="not the owner"):
            await finalizer.finalize(event, (at(9), at(10)), intruder)
        assert (await store.get_event("e1")).scheduled_event is None

    async def test_inverted_slot(self, finalizer, organizer, event):
        with pytest.raises(InvalidInputError):
            await finalizer.finalize(event, (at(10), at(9)), organizer)

    async def test_push_failure_keeps_the_slot(self, finalizer, google, store, organizer, event):
        google.create_errors.append(UnreachableError("calendar down"))

        with pytest.raises(PushFailedError) as excinfo:
            await finalizer.finalize(event, (at(9), at(10)), organizer)

        recorded = excinfo.value.scheduled_event
        assert recorded.calendar_event_id is None
        assert isinstance(excinfo.value.cause, UnreachableError)
        stored = (await store.get_event("e1")).scheduled_event
        assert stored is not None and not stored.is_pushed

        retried = await finalizer.retry_push(await store.get_event("e1"), organizer)
        assert retried.calendar_event_id == "remote-1"
        assert (await store.get_event("e1")).scheduled_event.is_pushed

    async def test_rejected_token_is_refreshed_for_push(
        self, finalizer, google, organizer, event
    ):
        google.valid_tokens = {"access-2"}
        scheduled = await finalizer.finalize(event, (at(9), at(10)), organizer)
        assert scheduled.is_pushed
        assert google.refresh_calls == [OWNER_EMAIL]

    async def test_no_account_to_push_to(self, finalizer, store, event):
        organizer = make_user()
        with pytest.raises(PushFailedError) as excinfo:
            await finalizer.finalize(event, (at(9), at(10)), organizer)
        assert isinstance(excinfo.value.cause, MalformedError)
        assert (await store.get_event("e1")).scheduled_event is not None

    async def test_caldav_organizer(self, store, providers, caldav, event):
        organizer = make_user(
            accounts=[make_account(OWNER_EMAIL, provider=CalendarProviderKind.CALDAV)]
        )
        finalizer = ScheduledEventResolver(store, providers, TokenRefresher(store, providers))
        scheduled = await finalizer.finalize(event, (at(9), at(10)), organizer)
        assert scheduled.calendar_event_id == "remote-1"
        assert caldav.refresh_calls == []


class TestRetryAndCancel:
    async def test_retry_on_pushed_event_is_noop(self, finalizer, google, organizer, event):
        scheduled = await finalizer.finalize(event, (at(9), at(10)), organizer)
        assert await finalizer.retry_push(event, organizer) == scheduled
        assert len(google.created) == 1

    async def test_retry_requires_a_recorded_slot(self, finalizer, organizer, event):
        with pytest.raises(InvalidInputError, match="not finalized"):
            await finalizer.retry_push(event, organizer)

    async def test_retry_picks_an_account_when_none_was_recorded(
        self, finalizer, store, google, organizer, event
    ):
        event.scheduled_event = ScheduledEvent(start=at(9), end=at(10))
        await store.set_scheduled_event("e1", event.scheduled_event)
        pushed = await finalizer.retry_push(event, organizer)
        assert pushed.calendar_account_email == OWNER_EMAIL
        assert google.created

    async def test_cancel_deletes_entry_and_clears_slot(
        self, finalizer, store, google, organizer, event
    ):
        await finalizer.finalize(event, (at(9), at(10)), organizer)
        await finalizer.cancel(event, organizer)
        assert google.deleted == ["remote-1"]
        assert (await store.get_event("e1")).scheduled_event is None
        assert event.scheduled_event is None

        again = await finalizer.finalize(event, (at(11), at(12)), organizer)
        assert again.start == at(11)

    async def test_cancel_unpushed_slot_only_clears(
        self, finalizer, store, google, organizer, event
    ):
        google.create_errors.append(UnreachableError("down"))
        with pytest.raises(PushFailedError):
            await finalizer.finalize(event, (at(9), at(10)), organizer)
        await finalizer.cancel(event, organizer)
        assert google.deleted == []
        assert (await store.get_event("e1")).scheduled_event is None

    async def test_cancel_requires_finalized_event(self, finalizer, organizer, event):
        with pytest.raises(InvalidInputError):
            await finalizer.cancel(event, organizer)
