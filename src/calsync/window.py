"""Per-run time window and runtime overrides for full (non-cursor) fetches."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MAX_LOOKAHEAD_DAYS = 1095

SETTING_TIME_ZONE = "calendar.time_zone"
SETTING_SYNC_START = "calendar.sync_start"
SETTING_LOOKAHEAD_DAYS = "calendar.lookahead_days"
SETTING_EXCLUDE_SUMMARIES = "calendar.exclude_summaries"


class SyncWindow(BaseModel):
    """Ephemeral ``{timeMin, timeMax, timeZone, updatedMin?}`` request window."""

    model_config = ConfigDict(frozen=True)

    time_min: datetime
    time_max: datetime
    time_zone: str
    updated_min: datetime | None = None


class RuntimeSettings(BaseModel):
    """Static configuration merged with the mutable settings store for one run."""

    model_config = ConfigDict(frozen=True)

    time_zone: str = "UTC"
    sync_start_date: date = date(2000, 1, 1)
    lookahead_days: int = Field(default=365, ge=1, le=MAX_LOOKAHEAD_DAYS)
    safety_overlap_minutes: int = Field(default=5, ge=0)
    exclude_patterns: tuple[str, ...] = ()


def _valid_time_zone(value: str) -> bool:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_runtime_settings(base: RuntimeSettings, settings: Mapping[str, str]) -> RuntimeSettings:
    """Apply non-empty, valid overrides from *settings* on top of *base*.

    Exclusion sources from both sides are merged, static ones first, duplicates
    removed.
    """
    time_zone = base.time_zone
    raw_time_zone = (settings.get(SETTING_TIME_ZONE) or "").strip()
    if raw_time_zone:
        if _valid_time_zone(raw_time_zone):
            time_zone = raw_time_zone
        else:
            logger.warning("Ignoring invalid %s setting: %r", SETTING_TIME_ZONE, raw_time_zone)

    sync_start = base.sync_start_date
    raw_start = (settings.get(SETTING_SYNC_START) or "").strip()
    if raw_start:
        try:
            sync_start = date.fromisoformat(raw_start[:10])
        except ValueError:
            logger.warning("Ignoring invalid %s setting: %r", SETTING_SYNC_START, raw_start)

    lookahead = base.lookahead_days
    raw_lookahead = (settings.get(SETTING_LOOKAHEAD_DAYS) or "").strip()
    if raw_lookahead:
        try:
            parsed = int(float(raw_lookahead))
        except ValueError:
            parsed = 0
        if parsed > 0:
            lookahead = min(parsed, MAX_LOOKAHEAD_DAYS)
        else:
            logger.warning(
                "Ignoring invalid %s setting: %r", SETTING_LOOKAHEAD_DAYS, raw_lookahead
            )

    dynamic_sources = [
        part.strip()
        for part in (settings.get(SETTING_EXCLUDE_SUMMARIES) or "").split(",")
        if part.strip()
    ]
    exclude_patterns = tuple(dict.fromkeys([*base.exclude_patterns, *dynamic_sources]))

    return base.model_copy(
        update={
            "time_zone": time_zone,
            "sync_start_date": sync_start,
            "lookahead_days": lookahead,
            "exclude_patterns": exclude_patterns,
        }
    )


def compute_sync_window(
    runtime: RuntimeSettings,
    last_success_at: datetime | None,
    now: datetime | None = None,
) -> SyncWindow:
    """Build the request window for a full fetch.

    A safety overlap is subtracted from the last successful sync so that late
    remote writes and clock skew are re-read rather than missed.
    """
    current = now or datetime.now(UTC)
    configured_start = datetime.combine(runtime.sync_start_date, time.min, tzinfo=UTC)

    safety_start: datetime | None = None
    if last_success_at is not None:
        if last_success_at.tzinfo is None:
            last_success_at = last_success_at.replace(tzinfo=UTC)
        safety_start = (
            last_success_at - timedelta(minutes=runtime.safety_overlap_minutes)
        ).replace(second=0, microsecond=0)

    use_safety = safety_start is not None and safety_start > configured_start
    end_day = (current + timedelta(days=runtime.lookahead_days + 1)).astimezone(UTC).date()

    return SyncWindow(
        time_min=safety_start if use_safety else configured_start,
        time_max=datetime.combine(end_day, time.min, tzinfo=UTC),
        time_zone=runtime.time_zone,
        updated_min=safety_start if use_safety else None,
    )
