"""CLI for schej: composition root for the scheduling engine."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import click

from schej.config import ConfigError, SchejConfig, load_config
from schej.core.logging import configure_logging
from schej.core.telemetry import init_telemetry
from schej.db import Database
from schej.engine.aggregator import EventAggregator
from schej.engine.availability import AvailabilityResolver
from schej.engine.errors import SchejError, sanitize_message
from schej.engine.finalize import ScheduledEventResolver
from schej.engine.providers import CalDAVProvider, GoogleCalendarProvider, ProviderSet
from schej.engine.service import CalendarView, SchedulingEngine, parse_time_bound
from schej.engine.tokens import TokenRefresher
from schej.migrations import run_migrations
from schej.storage import PostgresStore, SchedulingStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

_config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing schej.toml",
)


def build_providers(config: SchejConfig) -> ProviderSet:
    """Register every provider the configuration enables."""
    providers = ProviderSet()
    providers.register(CalDAVProvider(default_server_url=config.caldav.default_url))
    if config.google.configured:
        google_kwargs: dict[str, Any] = {
            "client_id": config.google.client_id,
            "client_secret": config.google.client_secret,
        }
        if config.google.token_url:
            google_kwargs["token_url"] = config.google.token_url
        if config.google.api_base_url:
            google_kwargs["api_base_url"] = config.google.api_base_url
        providers.register(GoogleCalendarProvider(**google_kwargs))
    else:
        logger.info("Google Calendar client not configured; Google accounts will fail")
    return providers


def build_engine(
    config: SchejConfig,
    store: SchedulingStore,
    providers: ProviderSet,
) -> SchedulingEngine:
    aggregation = config.aggregation
    refresher = TokenRefresher(
        store,
        providers,
        margin=timedelta(seconds=aggregation.refresh_margin_s),
    )
    return SchedulingEngine(
        store,
        EventAggregator(
            providers,
            refresher,
            max_workers=aggregation.max_workers,
            timeout_s=aggregation.timeout_s,
        ),
        AvailabilityResolver(),
        ScheduledEventResolver(store, providers, refresher),
        providers=providers,
        refresher=refresher,
        include_all_day=aggregation.include_all_day,
    )


def _load(config_dir: Path) -> SchejConfig:
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        service_name=config.name,
    )
    init_telemetry(config.name)
    return config


def _time_bound(value: str | None, param: str) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_time_bound(value)
    except SchejError as exc:
        raise click.BadParameter(str(exc), param_hint=param) from exc


async def _with_engine(config: SchejConfig, operation: Any) -> Any:
    """Open the database, run *operation(engine, store)*, then release everything."""
    db = Database.from_config(config.db)
    await db.connect()
    providers = build_providers(config)
    try:
        store = PostgresStore(db)
        return await operation(build_engine(config, store, providers), store)
    finally:
        await providers.shutdown()
        await db.close()


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except SchejError as exc:
        raise click.ClickException(sanitize_message(exc)) from exc


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """schej: calendar aggregation and availability engine."""


@cli.command()
@_config_option
@click.option("--user", "user_id", required=True, help="User whose calendars to merge")
@click.option("--time-min", required=True, help="RFC3339 lower bound")
@click.option("--time-max", required=True, help="RFC3339 upper bound")
@click.option(
    "--all-day/--no-all-day",
    "include_all_day",
    default=None,
    help="Include all-day entries (default from [schej.aggregation])",
)
def calendar(
    config_dir: Path,
    user_id: str,
    time_min: str,
    time_max: str,
    include_all_day: bool | None,
) -> None:
    """Print a user's merged busy timeline and unavailable sources as JSON."""
    config = _load(config_dir)
    start = _time_bound(time_min, "--time-min")
    end = _time_bound(time_max, "--time-max")

    async def _operation(engine: SchedulingEngine, store: SchedulingStore) -> CalendarView:
        user = await store.get_user(user_id)
        return await engine.get_calendar(user, start, end, include_all_day=include_all_day)

    view = _run(_with_engine(config, _operation))
    click.echo(json.dumps(view.to_dict(), indent=2))


@cli.command()
@_config_option
@click.option("--event", "event_id", required=True, help="Poll id")
@click.option("--participant", required=True, help="Participant user id")
@click.option("--time-min", default=None, help="RFC3339 lower bound (required for weekday polls)")
@click.option("--time-max", default=None, help="RFC3339 upper bound (required for weekday polls)")
@click.option("--recompute", is_flag=True, help="Overwrite a self-reported response")
def resolve(
    config_dir: Path,
    event_id: str,
    participant: str,
    time_min: str | None,
    time_max: str | None,
    recompute: bool,
) -> None:
    """Fill a participant's poll response from their calendars."""
    config = _load(config_dir)
    start = _time_bound(time_min, "--time-min")
    end = _time_bound(time_max, "--time-max")

    async def _operation(engine: SchedulingEngine, store: SchedulingStore) -> Any:
        return await engine.resolve_availability(
            event_id,
            participant,
            time_min=start,
            time_max=end,
            recompute=recompute,
        )

    response = _run(_with_engine(config, _operation))
    click.echo(response.model_dump_json(indent=2))


@cli.command()
@_config_option
@click.option(
    "--provision/--no-provision",
    default=True,
    show_default=True,
    help="Create the database first when it does not exist",
)
def migrate(config_dir: Path, provision: bool) -> None:
    """Create or upgrade the users/events tables."""
    config = _load(config_dir)
    db = Database.from_config(config.db)
    if provision:
        asyncio.run(db.provision())
    run_migrations(db.url)
    click.echo(f"Migrated database {db.db_name}")
