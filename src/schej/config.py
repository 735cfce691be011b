"""schej configuration loading and validation.

Reads schej.toml from a config directory, resolves ``${VAR}`` references and
returns a validated SchejConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "schej.toml"
DEFAULT_CALDAV_URL = "https://caldav.icloud.com"

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [schej.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from [schej.db] section.

    ``url`` wins over ``DATABASE_URL``/``POSTGRES_*`` when set.
    """

    name: str = "schej"
    url: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class AggregationConfig:
    """Fan-out limits from [schej.aggregation] section."""

    timeout_s: float = 5.0
    max_workers: int = 8
    refresh_margin_s: int = 60
    include_all_day: bool = True


@dataclass
class GoogleConfig:
    """OAuth client for Google Calendar from [schej.google] section."""

    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    token_url: str | None = None
    api_base_url: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class CalDAVConfig:
    """CalDAV defaults from [schej.caldav] section."""

    default_url: str = DEFAULT_CALDAV_URL


@dataclass
class SchejConfig:
    """Parsed and validated configuration."""

    name: str = "schej"
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    """Replace every ``${VAR_NAME}`` in *s*, reporting all missing names at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{path}] must be a table")
    return value


def _positive_number(raw: Any, path: str, cast: type[int] | type[float]) -> Any:
    try:
        value = cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}: {value!r}. Must be positive.")
    return value


def _parse_db(schej_section: dict[str, Any]) -> DatabaseConfig:
    db_section = _section(schej_section, "db", "schej.db")
    name = str(db_section.get("name", "schej")).strip()
    if not name:
        raise ConfigError("schej.db.name must be a non-empty string")
    url = db_section.get("url")
    if url is not None and (not isinstance(url, str) or not url.strip()):
        raise ConfigError("schej.db.url must be a non-empty string when set")
    min_size = _positive_number(db_section.get("min_pool_size", 2), "schej.db.min_pool_size", int)
    max_size = _positive_number(db_section.get("max_pool_size", 10), "schej.db.max_pool_size", int)
    if min_size > max_size:
        raise ConfigError(
            f"schej.db.min_pool_size ({min_size}) exceeds schej.db.max_pool_size ({max_size})"
        )
    return DatabaseConfig(
        name=name,
        url=url.strip() if url else None,
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_logging(schej_section: dict[str, Any]) -> LoggingConfig:
    logging_section = _section(schej_section, "logging", "schej.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid schej.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )


def _parse_aggregation(schej_section: dict[str, Any]) -> AggregationConfig:
    section = _section(schej_section, "aggregation", "schej.aggregation")
    include_all_day = section.get("include_all_day", True)
    if not isinstance(include_all_day, bool):
        raise ConfigError("schej.aggregation.include_all_day must be a boolean")
    return AggregationConfig(
        timeout_s=_positive_number(
            section.get("timeout_s", 5.0), "schej.aggregation.timeout_s", float
        ),
        max_workers=_positive_number(
            section.get("max_workers", 8), "schej.aggregation.max_workers", int
        ),
        refresh_margin_s=_positive_number(
            section.get("refresh_margin_s", 60), "schej.aggregation.refresh_margin_s", int
        ),
        include_all_day=include_all_day,
    )


def _parse_google(schej_section: dict[str, Any]) -> GoogleConfig:
    section = _section(schej_section, "google", "schej.google")
    client_id = str(section.get("client_id", "")).strip()
    client_secret = str(section.get("client_secret", "")).strip()
    if bool(client_id) != bool(client_secret):
        raise ConfigError("schej.google needs both client_id and client_secret")
    return GoogleConfig(
        client_id=client_id,
        client_secret=client_secret,
        token_url=section.get("token_url"),
        api_base_url=section.get("api_base_url"),
    )


def _parse_caldav(schej_section: dict[str, Any]) -> CalDAVConfig:
    section = _section(schej_section, "caldav", "schej.caldav")
    default_url = str(section.get("default_url", DEFAULT_CALDAV_URL)).strip()
    if not default_url.startswith(("http://", "https://")):
        raise ConfigError(f"Invalid schej.caldav.default_url: {default_url!r}")
    return CalDAVConfig(default_url=default_url.rstrip("/"))


def load_config(config_dir: Path) -> SchejConfig:
    """Load and validate schej.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    schej_section = data.get("schej")
    if not isinstance(schej_section, dict):
        raise ConfigError("Missing [schej] section in config")

    name = str(schej_section.get("name", "schej")).strip()
    if not name:
        raise ConfigError("schej.name must be a non-empty string")

    return SchejConfig(
        name=name,
        db=_parse_db(schej_section),
        logging=_parse_logging(schej_section),
        aggregation=_parse_aggregation(schej_section),
        google=_parse_google(schej_section),
        caldav=_parse_caldav(schej_section),
    )
