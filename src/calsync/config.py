"""Sync engine configuration loading and validation.

Reads a TOML file, resolves ``${VAR_NAME}`` references against the process
environment, and returns a validated ``SyncConfig`` dataclass tree.  The loaded
config is passed explicitly into every component; nothing below the CLI/API
layer reads the environment.

Example::

    [google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"

    [sync]
    lookback_days = 30
    horizon_days = 90

    [database]
    url = "${DATABASE_URL}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CONFIG_PATH = Path("calsync.toml")
CONFIG_PATH_ENV = "CALSYNC_CONFIG"

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_MAX_REQUEST_TIMEOUT_S = 120.0
_MAX_WINDOW_DAYS = 365
_MAX_RESULTS_LIMIT = 2500


class ConfigError(Exception):
    """Raised when sync configuration is missing, malformed, or invalid."""


@dataclass
class GoogleConfig:
    """Provider settings from the [google] section."""

    client_id: str
    client_secret: str
    token_url: str = GOOGLE_OAUTH_TOKEN_URL
    api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL
    request_timeout_s: float = 30.0

    def __repr__(self) -> str:
        return (
            f"GoogleConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"token_url={self.token_url!r}, api_base_url={self.api_base_url!r}, "
            f"request_timeout_s={self.request_timeout_s!r})"
        )


@dataclass
class SyncSettings:
    """Sync window, pagination and scheduling knobs from the [sync] section."""

    lookback_days: int = 30
    horizon_days: int = 90
    max_results: int = 500
    max_pages: int = 20
    token_refresh_margin_s: int = 60
    default_calendar_id: str = "primary"
    default_timezone: str = "America/Sao_Paulo"
    active_appointment_statuses: tuple[str, ...] = ("scheduled", "confirmed")
    cooldown_s: int = 60
    interval_minutes: int = 15
    max_parallel_tenants: int = 4


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings from the [database] section."""

    url: str | None = None
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    name: str = "calsync"
    min_pool_size: int = 2
    max_pool_size: int = 10

    def dsn(self) -> str:
        if self.url:
            return self.url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(host={self.host!r}, port={self.port!r}, name={self.name!r}, "
            f"url={'<set>' if self.url else None})"
        )


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass
class SyncConfig:
    """Parsed and validated sync engine configuration."""

    google: GoogleConfig
    sync: SyncSettings = field(default_factory=SyncSettings)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _require_section(data: dict[str, Any], name: str, *, required: bool = False) -> dict:
    section = data.get(name)
    if section is None:
        if required:
            raise ConfigError(f"Missing [{name}] section in config")
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _non_empty_str(section: dict, key: str, qualified: str) -> str:
    raw = section.get(key)
    if raw is None:
        raise ConfigError(f"Missing required field: {qualified}")
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f"{qualified} must be a non-empty string")
    return raw.strip()


def _bounded_int(
    section: dict,
    key: str,
    default: int,
    *,
    low: int,
    high: int,
    qualified: str,
) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"{qualified} must be an integer")
    if raw < low or raw > high:
        raise ConfigError(f"{qualified} must be between {low} and {high}, got {raw}")
    return raw


def _parse_google(section: dict) -> GoogleConfig:
    timeout_raw = section.get("request_timeout_s", 30.0)
    if isinstance(timeout_raw, bool) or not isinstance(timeout_raw, int | float):
        raise ConfigError("google.request_timeout_s must be a number")
    timeout = float(timeout_raw)
    if timeout <= 0 or timeout > _MAX_REQUEST_TIMEOUT_S:
        raise ConfigError(
            f"google.request_timeout_s must be in (0, {_MAX_REQUEST_TIMEOUT_S:g}], got {timeout:g}"
        )

    return GoogleConfig(
        client_id=_non_empty_str(section, "client_id", "google.client_id"),
        client_secret=_non_empty_str(section, "client_secret", "google.client_secret"),
        token_url=str(section.get("token_url", GOOGLE_OAUTH_TOKEN_URL)).strip(),
        api_base_url=str(section.get("api_base_url", GOOGLE_CALENDAR_API_BASE_URL)).rstrip("/"),
        request_timeout_s=timeout,
    )


def _parse_sync(section: dict) -> SyncSettings:
    defaults = SyncSettings()

    timezone = str(section.get("default_timezone", defaults.default_timezone)).strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(
            f"sync.default_timezone is not a valid IANA timezone: {timezone!r}"
        ) from exc

    statuses_raw = section.get(
        "active_appointment_statuses",
        list(defaults.active_appointment_statuses),
    )
    if not isinstance(statuses_raw, list) or not statuses_raw:
        raise ConfigError("sync.active_appointment_statuses must be a non-empty list of strings")
    statuses: list[str] = []
    for entry in statuses_raw:
        if not isinstance(entry, str) or not entry.strip():
            raise ConfigError("sync.active_appointment_statuses must contain non-empty strings")
        statuses.append(entry.strip().lower())

    calendar_id = str(section.get("default_calendar_id", defaults.default_calendar_id)).strip()
    if not calendar_id:
        raise ConfigError("sync.default_calendar_id must be a non-empty string")

    return SyncSettings(
        lookback_days=_bounded_int(
            section,
            "lookback_days",
            defaults.lookback_days,
            low=1,
            high=_MAX_WINDOW_DAYS,
            qualified="sync.lookback_days",
        ),
        horizon_days=_bounded_int(
            section,
            "horizon_days",
            defaults.horizon_days,
            low=1,
            high=_MAX_WINDOW_DAYS,
            qualified="sync.horizon_days",
        ),
        max_results=_bounded_int(
            section,
            "max_results",
            defaults.max_results,
            low=1,
            high=_MAX_RESULTS_LIMIT,
            qualified="sync.max_results",
        ),
        max_pages=_bounded_int(
            section,
            "max_pages",
            defaults.max_pages,
            low=1,
            high=1000,
            qualified="sync.max_pages",
        ),
        token_refresh_margin_s=_bounded_int(
            section,
            "token_refresh_margin_s",
            defaults.token_refresh_margin_s,
            low=0,
            high=3600,
            qualified="sync.token_refresh_margin_s",
        ),
        default_calendar_id=calendar_id,
        default_timezone=timezone,
        active_appointment_statuses=tuple(statuses),
        cooldown_s=_bounded_int(
            section,
            "cooldown_s",
            defaults.cooldown_s,
            low=0,
            high=86400,
            qualified="sync.cooldown_s",
        ),
        interval_minutes=_bounded_int(
            section,
            "interval_minutes",
            defaults.interval_minutes,
            low=1,
            high=1440,
            qualified="sync.interval_minutes",
        ),
        max_parallel_tenants=_bounded_int(
            section,
            "max_parallel_tenants",
            defaults.max_parallel_tenants,
            low=1,
            high=256,
            qualified="sync.max_parallel_tenants",
        ),
    )


def _parse_database(section: dict) -> DatabaseConfig:
    defaults = DatabaseConfig()
    url = section.get("url")
    if url is not None and (not isinstance(url, str) or not url.strip()):
        raise ConfigError("database.url must be a non-empty string when set")

    min_pool = _bounded_int(
        section,
        "min_pool_size",
        defaults.min_pool_size,
        low=1,
        high=100,
        qualified="database.min_pool_size",
    )
    max_pool = _bounded_int(
        section,
        "max_pool_size",
        defaults.max_pool_size,
        low=1,
        high=100,
        qualified="database.max_pool_size",
    )
    if min_pool > max_pool:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")

    return DatabaseConfig(
        url=url.strip() if isinstance(url, str) else None,
        host=str(section.get("host", defaults.host)),
        port=_bounded_int(
            section,
            "port",
            defaults.port,
            low=1,
            high=65535,
            qualified="database.port",
        ),
        user=str(section.get("user", defaults.user)),
        password=str(section.get("password", defaults.password)),
        name=str(section.get("name", defaults.name)),
        min_pool_size=min_pool,
        max_pool_size=max_pool,
    )


def _parse_logging(section: dict) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json', got {fmt!r}")
    return LoggingConfig(level=level, format=fmt)


def parse_config(data: dict[str, Any]) -> SyncConfig:
    """Validate an already-decoded TOML document into a ``SyncConfig``."""
    data = resolve_env_vars(data)
    return SyncConfig(
        google=_parse_google(_require_section(data, "google", required=True)),
        sync=_parse_sync(_require_section(data, "sync")),
        database=_parse_database(_require_section(data, "database")),
        logging=_parse_logging(_require_section(data, "logging")),
    )


def resolve_config_path(path: Path | None = None) -> Path:
    """Pick the config file: explicit path, then ``$CALSYNC_CONFIG``, then the default."""
    if path is not None:
        return path
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_config(path: Path | None = None) -> SyncConfig:
    """Load and validate a sync configuration file.

    Raises
    ------
    ConfigError
        If the file is missing, is not UTF-8 TOML, or lacks required fields.
    """
    toml_path = resolve_config_path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        text = toml_path.read_bytes().decode()
    except UnicodeDecodeError as exc:
        raise ConfigError(f"Config file is not valid UTF-8: {toml_path}") from exc

    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
