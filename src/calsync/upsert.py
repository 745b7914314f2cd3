"""Diff-aware upserts of normalized events into the local store.

``EventUpserter.apply`` resolves calendar ids (creating unknown calendars
first), then writes kept events in fixed-size batches.  Within a batch every
event runs concurrently; batches run one after another.  A record whose
persisted fields already match the incoming mapping is counted as skipped and
is not written.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime

from calsync.classifier import Excluded
from calsync.models import (
    EventRecord,
    NormalizedEvent,
    SyncDetails,
    SyncOutcome,
    UpdatedDetail,
)
from calsync.store import EventStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_DETAIL_LIMIT = 20
UNTITLED_LABEL = "(untitled event)"
_LABEL_LENGTH = 50
_DIFF_VALUE_LENGTH = 30

# Persisted fields compared one-to-one, with their diagnostic labels.
# start/end boundaries are compared in unified form below.
_DIFF_FIELDS: tuple[tuple[str, str], ...] = (
    ("summary", "summary"),
    ("description", "description"),
    ("location", "location"),
    ("event_status", "status"),
    ("event_type", "type"),
    ("transparency", "transparency"),
    ("visibility", "visibility"),
    ("color_id", "color"),
    ("hangout_link", "hangout link"),
    ("start_time_zone", "start time zone"),
    ("end_time_zone", "end time zone"),
    ("event_created_at", "created"),
    ("event_updated_at", "updated"),
    ("category", "category"),
    ("amount_expected", "amount expected"),
    ("amount_paid", "amount paid"),
    ("attended", "attended"),
    ("dosage_value", "dosage"),
    ("dosage_unit", "dosage unit"),
    ("treatment_stage", "treatment stage"),
    ("control_included", "control included"),
    ("is_domicilio", "home visit"),
)


def _normalize(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.isoformat()
    return str(value).strip()


def _shorten(value: str) -> str:
    return f"{value[:_DIFF_VALUE_LENGTH]}..." if len(value) > _DIFF_VALUE_LENGTH else value


def _boundary(date_time: datetime | None, day: date | None) -> str:
    if date_time is not None:
        if date_time.tzinfo is not None:
            date_time = date_time.astimezone(UTC)
        return date_time.strftime("%Y-%m-%d %H:%M:%S")
    if day is not None:
        return day.isoformat()
    return ""


def compute_event_diff(existing: EventRecord, incoming: EventRecord) -> list[str]:
    """Return human-readable ``label: "old" -> "new"`` entries for changed fields.

    Both sides are normalized to trimmed strings (timestamps in UTC) so that
    provider offsets and database round-trips do not produce spurious changes.
    An empty list means the stored record already matches.
    """
    changes: list[str] = []
    for field_name, label in _DIFF_FIELDS:
        old = _normalize(getattr(existing, field_name))
        new = _normalize(getattr(incoming, field_name))
        if old != new:
            changes.append(f'{label}: "{_shorten(old)}" -> "{_shorten(new)}"')

    old_start = _boundary(existing.start_date_time, existing.start_date)
    new_start = _boundary(incoming.start_date_time, incoming.start_date)
    if old_start != new_start:
        changes.append(f"start: {old_start} -> {new_start}")

    old_end = _boundary(existing.end_date_time, existing.end_date)
    new_end = _boundary(incoming.end_date_time, incoming.end_date)
    if old_end != new_end:
        changes.append(f"end: {old_end} -> {new_end}")
    return changes


def _label(summary: str | None) -> str:
    text = (summary or "").strip()
    return text[:_LABEL_LENGTH] if text else UNTITLED_LABEL


class EventUpserter:
    """Applies one pass worth of classification results to an :class:`EventStore`.

    The calendar id cache lives for the lifetime of the instance; create one
    upserter per run.
    """

    def __init__(
        self,
        store: EventStore,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        detail_limit: int = DEFAULT_DETAIL_LIMIT,
        concurrent: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._store = store
        self._batch_size = batch_size
        self._detail_limit = detail_limit
        self._concurrent = concurrent
        self._clock = clock or (lambda: datetime.now(UTC))
        self._calendar_ids: dict[str, int] = {}

    async def resolve_calendar_id(self, external_id: str) -> int:
        cached = self._calendar_ids.get(external_id)
        if cached is not None:
            return cached
        source = await self._store.ensure_calendar(external_id)
        self._calendar_ids[external_id] = source.id
        return source.id

    def remember_calendar(self, external_id: str, calendar_id: int) -> None:
        self._calendar_ids[external_id] = calendar_id

    async def apply(
        self,
        events: Sequence[NormalizedEvent],
        exclusions: Sequence[Excluded] = (),
    ) -> SyncOutcome:
        outcome = SyncOutcome()
        if not events and not exclusions:
            return outcome

        # Unknown calendars are created before any event write.
        for external_id in dict.fromkeys(
            [event.calendar_external_id for event in events]
            + [item.calendar_external_id for item in exclusions]
        ):
            await self.resolve_calendar_id(external_id)

        # A key is written at most once per call; the latest item wins.
        unique_events = list(
            {(event.calendar_external_id, event.external_event_id): event for event in events}.values()
        )
        synced_at = self._clock()

        for start in range(0, len(unique_events), self._batch_size):
            batch = unique_events[start : start + self._batch_size]
            if self._concurrent:
                await asyncio.gather(
                    *(self._upsert_one(event, synced_at, outcome) for event in batch)
                )
            else:
                for event in batch:
                    await self._upsert_one(event, synced_at, outcome)

        for item in exclusions:
            await self._delete_one(item, outcome)

        return outcome

    def _record_detail(self, bucket: list, entry: object) -> None:
        if len(bucket) < self._detail_limit:
            bucket.append(entry)

    async def _upsert_one(
        self, event: NormalizedEvent, synced_at: datetime, outcome: SyncOutcome
    ) -> None:
        details: SyncDetails = outcome.details
        try:
            calendar_id = self._calendar_ids[event.calendar_external_id]
            record = event.to_record(calendar_id, synced_at)
            existing = await self._store.find_event(calendar_id, event.external_event_id)
            if existing is None:
                await self._store.insert_event(record)
                outcome.inserted += 1
                self._record_detail(details.inserted, _label(event.summary))
                return

            changes = compute_event_diff(existing, record)
            if not changes:
                outcome.skipped += 1
                return

            await self._store.update_event(record)
            outcome.updated += 1
            self._record_detail(
                details.updated, UpdatedDetail(summary=_label(event.summary), changes=changes)
            )
        except Exception:
            logger.exception(
                "Failed to upsert event %s for calendar %s",
                event.external_event_id,
                event.calendar_external_id,
            )
            outcome.skipped += 1

    async def _delete_one(self, item: Excluded, outcome: SyncOutcome) -> None:
        calendar_id = self._calendar_ids[item.calendar_external_id]

        summary = item.summary
        if not summary:
            try:
                existing = await self._store.find_event(calendar_id, item.external_event_id)
            except Exception as exc:
                logger.debug(
                    "Label lookup failed for deleted event %s: %s", item.external_event_id, exc
                )
            else:
                summary = existing.summary if existing is not None else None

        try:
            removed = await self._store.delete_event(calendar_id, item.external_event_id)
        except Exception:
            logger.exception(
                "Failed to delete event %s for calendar %s",
                item.external_event_id,
                item.calendar_external_id,
            )
            outcome.skipped += 1
            return

        if removed:
            outcome.deleted += 1
            self._record_detail(outcome.details.deleted, _label(summary))
