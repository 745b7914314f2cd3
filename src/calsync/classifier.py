"""Classify raw provider items as excluded (deletion candidates) or kept."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Literal

from calsync.metadata import MetadataParser, parse_event_metadata
from calsync.models import EventTime, NormalizedEvent

logger = logging.getLogger(__name__)

CANCELLED_STATUS = "cancelled"


@dataclass(frozen=True)
class ExclusionRules:
    """Ordered, deduplicated exclusion regexes (case-insensitive)."""

    patterns: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def from_sources(cls, *source_groups: Iterable[str]) -> ExclusionRules:
        seen: dict[str, None] = {}
        for group in source_groups:
            for source in group:
                normalized = source.strip()
                if normalized:
                    seen.setdefault(normalized, None)

        compiled: list[re.Pattern[str]] = []
        for source in seen:
            try:
                compiled.append(re.compile(source, re.IGNORECASE))
            except re.error as exc:
                logger.warning("Skipping invalid exclusion pattern %r: %s", source, exc)
        return cls(patterns=tuple(compiled))

    @property
    def sources(self) -> tuple[str, ...]:
        return tuple(pattern.pattern for pattern in self.patterns)

    def matches(self, summary: str | None, description: str | None) -> bool:
        if not self.patterns:
            return False
        text = f"{summary or ''}\n{description or ''}".lower()
        return any(pattern.search(text) for pattern in self.patterns)


@dataclass(frozen=True)
class Excluded:
    calendar_external_id: str
    external_event_id: str
    summary: str | None
    reason: Literal["cancelled", "pattern"]


@dataclass(frozen=True)
class Kept:
    event: NormalizedEvent


Classification = Excluded | Kept


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _parse_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Ignoring unparseable timestamp %r", value)
        return None


def _parse_event_time(value: Any) -> EventTime | None:
    if not isinstance(value, dict):
        return None

    time_zone = _optional_str(value.get("timeZone"))
    date_time = _parse_datetime(value.get("dateTime"))
    if date_time is not None:
        return EventTime(date_time=date_time, time_zone=time_zone)

    raw_date = value.get("date")
    if isinstance(raw_date, str) and raw_date.strip():
        try:
            return EventTime(day=date.fromisoformat(raw_date.strip()), time_zone=time_zone)
        except ValueError:
            logger.debug("Ignoring unparseable all-day date %r", raw_date)
    return None


def classify_item(
    raw: dict[str, Any],
    calendar_external_id: str,
    rules: ExclusionRules,
    parse_metadata: MetadataParser = parse_event_metadata,
) -> Classification | None:
    """Classify one raw ``events.list`` item.

    Returns ``None`` for items without a usable identifier; they cannot be
    tracked and are dropped.
    """
    event_id = raw.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        return None
    event_id = event_id.strip()

    summary = _optional_str(raw.get("summary"))
    description = _optional_str(raw.get("description"))
    status = _optional_str(raw.get("status"))

    if status == CANCELLED_STATUS:
        return Excluded(calendar_external_id, event_id, summary, "cancelled")
    if rules.matches(summary, description):
        return Excluded(calendar_external_id, event_id, summary, "pattern")

    metadata = parse_metadata(summary, description)
    amount_expected = metadata.amount_expected
    if amount_expected is None and metadata.amount_paid is not None:
        amount_expected = metadata.amount_paid

    event = NormalizedEvent(
        calendar_external_id=calendar_external_id,
        external_event_id=event_id,
        status=status,
        event_type=_optional_str(raw.get("eventType")),
        summary=summary,
        description=description,
        location=_optional_str(raw.get("location")),
        color_id=_optional_str(raw.get("colorId")),
        transparency=_optional_str(raw.get("transparency")),
        visibility=_optional_str(raw.get("visibility")),
        hangout_link=_optional_str(raw.get("hangoutLink")),
        start=_parse_event_time(raw.get("start")),
        end=_parse_event_time(raw.get("end")),
        created_at=_parse_datetime(raw.get("created")),
        updated_at=_parse_datetime(raw.get("updated")),
        category=metadata.category,
        amount_expected=amount_expected,
        amount_paid=metadata.amount_paid,
        attended=metadata.attended,
        dosage_value=metadata.dosage_value,
        dosage_unit=metadata.dosage_unit,
        treatment_stage=metadata.treatment_stage,
        control_included=metadata.control_included,
        is_domicilio=metadata.is_domicilio,
    )
    return Kept(event)
