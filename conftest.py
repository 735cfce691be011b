"""Root conftest: PostgreSQL testcontainer fixtures shared by every test tree."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from schej.db import Database

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1
_TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS = (
    "did not receive an exit event",
    "tried to kill container",
    "no such container",
    "removal of container",
    "is already in progress",
    "is dead or marked for removal",
)


def _is_transient_docker_teardown_error(exc: BaseException) -> bool:
    text = " ".join(
        part for part in (str(getattr(exc, "explanation", "") or ""), str(exc)) if part
    ).lower()
    return any(marker in text for marker in _TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS)


def _retry_testcontainer_stop(
    stop_call: Callable[[], None],
    *,
    max_attempts: int = _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
    base_delay_seconds: float = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS,
) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    delay = base_delay_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= max_attempts or not _is_transient_docker_teardown_error(exc):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                max_attempts,
                exc,
            )
            time.sleep(delay)
            delay *= 2


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this session.

    Each ``provisioned_database`` use creates a fresh, randomly named
    database, so rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16")
    container.start()
    try:
        yield container
    finally:
        _retry_testcontainer_stop(container.stop)


@pytest.fixture
def database_factory(postgres_container: PostgresContainer) -> Callable[..., Database]:
    """Build ``Database`` instances wired to the test container."""
    from schej.db import Database

    def _make(db_name: str | None = None, **kwargs: Any) -> Database:
        return Database(
            db_name=db_name or _unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=kwargs.pop("min_pool_size", 1),
            max_pool_size=kwargs.pop("max_pool_size", 3),
        )

    return _make


@pytest.fixture
def provisioned_database(
    database_factory: Callable[..., Database],
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh, migrated database and an open pool for one test.

    Tests use this as::

        async with provisioned_database() as db:
            ...
    """
    from schej.migrations import run_migrations

    @asynccontextmanager
    async def _provision() -> AsyncIterator[Database]:
        db = database_factory()
        await db.provision()
        await asyncio.to_thread(run_migrations, db.url)
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
