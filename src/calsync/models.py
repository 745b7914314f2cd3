"""Data model shared by the classifier, the upsert engine and the orchestrator."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DETAIL_LIMIT_PER_RUN = 50


class EventTime(BaseModel):
    """A start or end boundary: either an all-day date or a timestamp, never both."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    day: date | None = None
    date_time: datetime | None = None
    time_zone: str | None = None

    @model_validator(mode="after")
    def _validate_shape(self) -> EventTime:
        if self.day is not None and self.date_time is not None:
            raise ValueError("EventTime cannot carry both a day and a date_time")
        return self


class CalendarSource(BaseModel):
    """One tracked remote calendar."""

    id: int
    external_id: str
    name: str | None = None
    resumption_cursor: str | None = None
    last_success_at: datetime | None = None


class NormalizedEvent(BaseModel):
    """Local-schema representation of one remote event."""

    model_config = ConfigDict(extra="forbid")

    calendar_external_id: str
    external_event_id: str
    status: str | None = None
    event_type: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    color_id: str | None = None
    transparency: str | None = None
    visibility: str | None = None
    hangout_link: str | None = None
    start: EventTime | None = None
    end: EventTime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    category: str | None = None
    amount_expected: int | None = None
    amount_paid: int | None = None
    attended: bool | None = None
    dosage_value: float | None = None
    dosage_unit: str | None = None
    treatment_stage: str | None = None
    control_included: bool | None = None
    is_domicilio: bool | None = None

    def to_record(self, calendar_id: int, synced_at: datetime | None = None) -> EventRecord:
        start = self.start or EventTime()
        end = self.end or EventTime()
        return EventRecord(
            calendar_id=calendar_id,
            external_event_id=self.external_event_id,
            event_status=self.status,
            event_type=self.event_type,
            summary=self.summary,
            description=self.description,
            location=self.location,
            color_id=self.color_id,
            transparency=self.transparency,
            visibility=self.visibility,
            hangout_link=self.hangout_link,
            start_date=start.day,
            start_date_time=start.date_time,
            start_time_zone=start.time_zone,
            end_date=end.day,
            end_date_time=end.date_time,
            end_time_zone=end.time_zone,
            event_created_at=self.created_at,
            event_updated_at=self.updated_at,
            category=self.category,
            amount_expected=self.amount_expected,
            amount_paid=self.amount_paid,
            attended=self.attended,
            dosage_value=self.dosage_value,
            dosage_unit=self.dosage_unit,
            treatment_stage=self.treatment_stage,
            control_included=self.control_included,
            is_domicilio=self.is_domicilio,
            last_synced_at=synced_at,
        )


class EventRecord(BaseModel):
    """Persisted projection of one remote event, keyed by (calendar_id, external_event_id)."""

    calendar_id: int
    external_event_id: str
    event_status: str | None = None
    event_type: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    color_id: str | None = None
    transparency: str | None = None
    visibility: str | None = None
    hangout_link: str | None = None
    start_date: date | None = None
    start_date_time: datetime | None = None
    start_time_zone: str | None = None
    end_date: date | None = None
    end_date_time: datetime | None = None
    end_time_zone: str | None = None
    event_created_at: datetime | None = None
    event_updated_at: datetime | None = None
    category: str | None = None
    amount_expected: int | None = None
    amount_paid: int | None = None
    attended: bool | None = None
    dosage_value: float | None = None
    dosage_unit: str | None = None
    treatment_stage: str | None = None
    control_included: bool | None = None
    is_domicilio: bool | None = None
    last_synced_at: datetime | None = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.calendar_id, self.external_event_id)


# Columns written on insert/update, in SQL parameter order.
RECORD_COLUMNS: tuple[str, ...] = tuple(EventRecord.model_fields)


class UpdatedDetail(BaseModel):
    summary: str
    changes: list[str]


class SyncDetails(BaseModel):
    inserted: list[str] = Field(default_factory=list)
    updated: list[UpdatedDetail] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)

    def extend(self, other: SyncDetails, limit: int = DETAIL_LIMIT_PER_RUN) -> None:
        self.inserted.extend(other.inserted[: max(0, limit - len(self.inserted))])
        self.updated.extend(other.updated[: max(0, limit - len(self.updated))])
        self.deleted.extend(other.deleted[: max(0, limit - len(self.deleted))])


class CalendarSyncSummary(BaseModel):
    """Per-calendar slice of a run."""

    calendar_id: str
    fetched: int = 0
    excluded: int = 0
    pages: int = 0
    full_sync: bool = False
    truncated: bool = False
    cursor_advanced: bool = False
    error: str | None = None


class SyncOutcome(BaseModel):
    """Result of a pass (one calendar) or a run (every configured calendar)."""

    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    full_sync: bool = False
    truncated: bool = False
    details: SyncDetails = Field(default_factory=SyncDetails)
    calendars: list[CalendarSyncSummary] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def failed_calendars(self) -> list[str]:
        return [summary.calendar_id for summary in self.calendars if summary.error]

    def absorb(self, other: SyncOutcome, *, detail_limit: int = DETAIL_LIMIT_PER_RUN) -> None:
        """Add *other*'s counts and (bounded) details into this outcome."""
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.deleted += other.deleted
        self.full_sync = self.full_sync or other.full_sync
        self.truncated = self.truncated or other.truncated
        self.details.extend(other.details, detail_limit)
        self.calendars.extend(other.calendars)

    def log_fields(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "deleted": self.deleted,
            "full_sync": self.full_sync,
            "truncated": self.truncated,
        }
