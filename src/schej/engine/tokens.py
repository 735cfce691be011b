"""Token refresher: lazy and reactive access-token renewal, serialized per account."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from schej.engine.errors import MalformedError, RefreshDeniedError
from schej.engine.models import CalendarAccount, User
from schej.engine.providers.base import ProviderSet
from schej.storage.base import SchedulingStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(seconds=60)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(eq=False)
class _RefreshSlot:
    """Per-account lock plus the account its last holder refreshed."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    latest: CalendarAccount | None = None


class TokenRefresher:
    """Keeps account access tokens valid.

    A second caller needing the same account's token while a refresh is in
    flight waits on the per-account lock and then reuses the new token
    instead of issuing a duplicate exchange. Slots live only while a caller
    holds them, so refreshed tokens are not retained after the last waiter.
    """

    def __init__(
        self,
        store: SchedulingStore,
        providers: ProviderSet,
        *,
        margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._providers = providers
        self._margin = margin
        self._clock = clock
        self._slots: weakref.WeakValueDictionary[tuple[str, str], _RefreshSlot] = (
            weakref.WeakValueDictionary()
        )

    def _slot_for(self, key: tuple[str, str]) -> _RefreshSlot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _RefreshSlot()
            self._slots[key] = slot
        return slot

    @staticmethod
    def _account(user: User, email: str) -> CalendarAccount:
        account = user.calendar_accounts.get(email)
        if account is None:
            raise MalformedError(f"User '{user.id}' has no calendar account '{email}'")
        return account

    def needs_refresh(self, account: CalendarAccount, now: datetime | None = None) -> bool:
        """True when the token expires within the margin and a refresh is possible."""
        if not account.refresh_token:
            return False
        if not account.access_token or account.access_token_expire_date is None:
            return True
        current = now or self._clock()
        return account.access_token_expire_date <= current + self._margin

    def _adopt_latest(
        self, user: User, email: str, latest: CalendarAccount | None
    ) -> CalendarAccount | None:
        """Use a token refreshed by another caller for the same account, if still fresh."""
        if latest is None or self.needs_refresh(latest):
            return None
        current = self._account(user, email)
        if current.access_token == latest.access_token:
            return current
        adopted = current.model_copy(
            update={
                "access_token": latest.access_token,
                "access_token_expire_date": latest.access_token_expire_date,
                "refresh_token": latest.refresh_token,
            }
        )
        user.calendar_accounts[email] = adopted
        return adopted

    async def ensure_valid(
        self,
        user: User,
        email: str,
        *,
        force: bool = False,
        stale_token: str | None = None,
        denied: set[str] | None = None,
    ) -> CalendarAccount:
        """Return the account with a usable access token.

        ``force`` refreshes regardless of expiry (after an ``Unauthorized``);
        ``stale_token`` names the token that was rejected so a waiter can skip
        the exchange when another caller already replaced it. Emails in
        ``denied`` fail fast with ``RefreshDeniedError``; a new denial is
        added to it.
        """
        account = self._account(user, email)
        provider = self._providers.for_account(account)
        if not provider.supports_refresh:
            return account
        if denied is not None and email in denied:
            raise RefreshDeniedError(f"Token refresh already denied for '{email}'")
        if not force and not self.needs_refresh(account):
            return account

        slot = self._slot_for((user.id, email))
        async with slot.lock:
            if denied is not None and email in denied:
                raise RefreshDeniedError(f"Token refresh already denied for '{email}'")
            account = self._account(user, email)
            if stale_token is not None and account.access_token != stale_token:
                return account
            adopted = self._adopt_latest(user, email, slot.latest)
            if adopted is not None and (
                stale_token is None or adopted.access_token != stale_token
            ):
                return adopted
            if not force and not self.needs_refresh(account):
                return account
            if not account.refresh_token:
                raise RefreshDeniedError(f"Account '{email}' has no refresh token")

            try:
                grant = await provider.refresh_credentials(account)
            except RefreshDeniedError:
                if denied is not None:
                    denied.add(email)
                logger.warning("Token refresh denied for account %s", email)
                raise

            refresh_token = grant.refresh_token or account.refresh_token
            await self._store.update_account_tokens(
                user.id,
                email,
                access_token=grant.access_token,
                expires_at=grant.expires_at,
                refresh_token=grant.refresh_token,
            )
            refreshed = account.model_copy(
                update={
                    "access_token": grant.access_token,
                    "access_token_expire_date": grant.expires_at,
                    "refresh_token": refresh_token,
                }
            )
            user.calendar_accounts[email] = refreshed
            slot.latest = refreshed
            logger.info(
                "Refreshed access token for account %s (expires %s, rotated=%s)",
                email,
                grant.expires_at.isoformat(),
                grant.refresh_token is not None,
            )
            return refreshed
