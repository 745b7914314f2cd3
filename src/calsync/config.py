"""Configuration loading and validation.

Reads a TOML file with a ``[calsync]`` table, resolves ``${VAR_NAME}``
references from the environment, and validates the result into a
:class:`CalendarSyncConfig`.

Example::

    [calsync]
    calendar_ids = ["clinic@group.calendar.google.com"]
    time_zone = "America/Santiago"
    sync_start_date = 2023-01-01
    lookahead_days = 365
    exclude_patterns = ["^feriado", "vacaciones"]
    database_url = "${DATABASE_URL}"

    [calsync.retry]
    max_attempts = 4

    [calsync.logging]
    level = "INFO"
    format = "json"
"""

from __future__ import annotations

import os
import re
import tomllib
from datetime import date
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from calsync.retry import RetryPolicy
from calsync.window import MAX_LOOKAHEAD_DAYS, RuntimeSettings

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CREDENTIALS_ENV = "CALSYNC_GOOGLE_CREDENTIALS_JSON"
DEFAULT_ACCESS_TOKEN_ENV = "CALSYNC_GOOGLE_ACCESS_TOKEN"


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


class LoggingConfig(BaseModel):
    """Logging configuration from the ``[calsync.logging]`` table."""

    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    log_file: Path | None = None


class CalendarSyncConfig(BaseModel):
    """Static configuration for the sync engine and its scheduler."""

    model_config = ConfigDict(extra="forbid")

    calendar_ids: list[str] = Field(min_length=1)
    time_zone: str = "UTC"
    sync_start_date: date = date(2000, 1, 1)
    lookahead_days: int = Field(default=365, ge=1, le=MAX_LOOKAHEAD_DAYS)
    exclude_patterns: list[str] = Field(default_factory=list)
    safety_overlap_minutes: int = Field(default=5, ge=0)
    page_cap: int = Field(default=100, ge=1)
    page_size: int = Field(default=2500, ge=1, le=2500)
    batch_size: int = Field(default=50, ge=1)
    detail_limit: int = Field(default=20, ge=0)
    concurrent_upserts: bool = True
    interval_minutes: int = Field(default=15, ge=1)
    min_interval_minutes: int = Field(default=5, ge=0)
    stale_run_minutes: int = Field(default=15, ge=1)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    credentials_env: str = DEFAULT_CREDENTIALS_ENV
    access_token_env: str = DEFAULT_ACCESS_TOKEN_ENV
    database_url: str | None = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("calendar_ids")
    @classmethod
    def _normalize_calendar_ids(cls, value: list[str]) -> list[str]:
        normalized = [item.strip() for item in value if item.strip()]
        if not normalized:
            raise ValueError("calendar_ids must contain at least one non-empty id")
        return list(dict.fromkeys(normalized))

    @field_validator("time_zone")
    @classmethod
    def _validate_time_zone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown time zone: {value!r}") from exc
        return normalized

    @field_validator("exclude_patterns")
    @classmethod
    def _strip_patterns(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item.strip()]

    def runtime_settings(self) -> RuntimeSettings:
        return RuntimeSettings(
            time_zone=self.time_zone,
            sync_start_date=self.sync_start_date,
            lookahead_days=self.lookahead_days,
            safety_overlap_minutes=self.safety_overlap_minutes,
            exclude_patterns=tuple(self.exclude_patterns),
        )


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, date, None) are returned unchanged.

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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"]) or "calsync"
        parts.append(f"calsync.{location}: {error['msg']}")
    return "; ".join(parts)


def parse_config(data: dict[str, Any]) -> CalendarSyncConfig:
    """Validate an already-parsed document containing a ``calsync`` table."""
    data = resolve_env_vars(data)

    section = data.get("calsync")
    if not isinstance(section, dict):
        raise ConfigError("Missing [calsync] section in config")

    try:
        return CalendarSyncConfig.model_validate(section)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {_format_validation_error(exc)}") from exc


def load_config(path: Path) -> CalendarSyncConfig:
    """Load and validate the TOML config at *path*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, references unset
        environment variables, or fails validation.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ConfigError(f"Config file is not valid UTF-8: {path}") from exc

    return parse_config(data)
