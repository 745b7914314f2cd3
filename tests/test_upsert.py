"""Tests for calsync.upsert: diffing, batched writes and deletions."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from calsync.classifier import Excluded
from calsync.models import EventRecord, EventTime, NormalizedEvent
from calsync.testing import InMemoryEventStore
from calsync.upsert import UNTITLED_LABEL, EventUpserter, compute_event_diff

pytestmark = pytest.mark.unit

SYNCED_AT = datetime(2024, 6, 15, 12, 0, tzinfo=UTC)


def _event(
    event_id: str,
    summary: str | None = "Consulta",
    *,
    calendar: str = "cal-1",
    start: datetime | None = None,
    **fields,
) -> NormalizedEvent:
    return NormalizedEvent(
        calendar_external_id=calendar,
        external_event_id=event_id,
        summary=summary,
        status="confirmed",
        start=EventTime(date_time=start or datetime(2024, 3, 1, 13, 0, tzinfo=UTC)),
        **fields,
    )


def _upserter(store: InMemoryEventStore, **kwargs) -> EventUpserter:
    return EventUpserter(store, clock=lambda: SYNCED_AT, **kwargs)


class TestComputeEventDiff:
    def _record(self, **fields) -> EventRecord:
        return EventRecord(calendar_id=1, external_event_id="e1", **fields)

    def test_identical_records_have_no_diff(self):
        record = self._record(summary="Consulta", amount_expected=50_000)
        assert compute_event_diff(record, record.model_copy()) == []

    def test_sync_timestamp_is_not_a_change(self):
        old = self._record(summary="Consulta", last_synced_at=datetime(2024, 1, 1, tzinfo=UTC))
        new = self._record(summary="Consulta", last_synced_at=SYNCED_AT)
        assert compute_event_diff(old, new) == []

    def test_changed_field_is_labelled(self):
        changes = compute_event_diff(
            self._record(summary="Consulta"), self._record(summary="Control")
        )
        assert changes == ['summary: "Consulta" -> "Control"']

    def test_long_values_are_shortened(self):
        changes = compute_event_diff(
            self._record(description="a" * 40), self._record(description="b")
        )
        assert changes == [f'description: "{"a" * 30}..." -> "b"']

    def test_none_and_empty_string_are_equal(self):
        assert compute_event_diff(self._record(location=None), self._record(location="")) == []

    def test_same_instant_in_different_offsets_is_equal(self):
        old = self._record(start_date_time=datetime(2024, 3, 1, 13, 0, tzinfo=UTC))
        new = self._record(start_date_time=datetime.fromisoformat("2024-03-01T10:00:00-03:00"))
        assert compute_event_diff(old, new) == []

    def test_all_day_to_timed_start(self):
        old = self._record(start_date=date(2024, 3, 1))
        new = self._record(start_date_time=datetime(2024, 3, 1, 9, 0, tzinfo=UTC))
        assert compute_event_diff(old, new) == ["start: 2024-03-01 -> 2024-03-01 09:00:00"]

    def test_metadata_fields_are_compared(self):
        changes = compute_event_diff(
            self._record(amount_paid=None, attended=None),
            self._record(amount_paid=25_000, attended=True),
        )
        assert changes == ['amount paid: "" -> "25000"', 'attended: "" -> "True"']


class TestEventUpserter:
    async def test_inserts_new_events_and_creates_calendar(self, memory_store):
        outcome = await _upserter(memory_store).apply([_event("e1"), _event("e2", "Control")])

        assert outcome.inserted == 2
        assert outcome.details.inserted == ["Consulta", "Control"]
        source = memory_store.calendars["cal-1"]
        assert set(memory_store.events) == {(source.id, "e1"), (source.id, "e2")}
        assert memory_store.events[(source.id, "e1")].last_synced_at == SYNCED_AT

    async def test_unchanged_event_is_skipped_without_write(self, memory_store):
        upserter = _upserter(memory_store)
        await upserter.apply([_event("e1")])
        writes_before = list(memory_store.writes)

        outcome = await upserter.apply([_event("e1")])

        assert (outcome.inserted, outcome.updated, outcome.skipped) == (0, 0, 1)
        assert memory_store.writes == writes_before

    async def test_changed_event_is_updated_with_diff(self, memory_store):
        upserter = _upserter(memory_store)
        await upserter.apply([_event("e1")])

        outcome = await upserter.apply([_event("e1", "Control")])

        assert outcome.updated == 1
        assert outcome.details.updated[0].summary == "Control"
        assert outcome.details.updated[0].changes == ['summary: "Consulta" -> "Control"']
        assert memory_store.writes[-1][0] == "update"

    async def test_per_item_failure_does_not_abort_batch(self, memory_store):
        memory_store.fail_writes_for = {"e2"}

        outcome = await _upserter(memory_store).apply(
            [_event("e1"), _event("e2"), _event("e3")]
        )

        assert outcome.inserted == 2
        assert outcome.skipped == 1
        assert {key[1] for key in memory_store.events} == {"e1", "e3"}

    async def test_duplicate_keys_last_wins(self, memory_store):
        outcome = await _upserter(memory_store).apply(
            [_event("e1", "First"), _event("e1", "Second")]
        )

        assert outcome.inserted == 1
        assert [record.summary for record in memory_store.events.values()] == ["Second"]
        assert len(memory_store.writes) == 1

    async def test_detail_lists_are_bounded(self, memory_store):
        events = [_event(f"e{i}", f"Event {i}") for i in range(5)]

        outcome = await _upserter(memory_store, detail_limit=2).apply(events)

        assert outcome.inserted == 5
        assert outcome.details.inserted == ["Event 0", "Event 1"]

    async def test_sequential_mode_and_small_batches(self, memory_store):
        events = [_event(f"e{i}") for i in range(7)]

        outcome = await _upserter(memory_store, batch_size=3, concurrent=False).apply(events)

        assert outcome.inserted == 7
        assert [key[1] for _, key in memory_store.writes] == [f"e{i}" for i in range(7)]

    async def test_untitled_label(self, memory_store):
        outcome = await _upserter(memory_store).apply([_event("e1", None)])
        assert outcome.details.inserted == [UNTITLED_LABEL]

    def test_rejects_non_positive_batch_size(self, memory_store):
        with pytest.raises(ValueError):
            EventUpserter(memory_store, batch_size=0)


class TestDeletions:
    async def test_delete_uses_stored_label_when_missing(self, memory_store):
        upserter = _upserter(memory_store)
        await upserter.apply([_event("e1", "Existing label")])

        outcome = await upserter.apply([], [Excluded("cal-1", "e1", None, "cancelled")])

        assert outcome.deleted == 1
        assert outcome.details.deleted == ["Existing label"]
        assert memory_store.events == {}

    async def test_delete_prefers_incoming_label(self, memory_store):
        upserter = _upserter(memory_store)
        await upserter.apply([_event("e1", "Old")])

        outcome = await upserter.apply([], [Excluded("cal-1", "e1", "Feriado", "pattern")])

        assert outcome.details.deleted == ["Feriado"]

    async def test_label_lookup_failure_is_ignored(self, memory_store):
        upserter = _upserter(memory_store)
        await upserter.apply([_event("e1")])
        memory_store.fail_lookups_for = {"e1"}

        outcome = await upserter.apply([], [Excluded("cal-1", "e1", None, "cancelled")])

        assert outcome.deleted == 1
        assert outcome.details.deleted == [UNTITLED_LABEL]

    async def test_deleting_unknown_event_counts_nothing(self, memory_store):
        outcome = await _upserter(memory_store).apply(
            [], [Excluded("cal-1", "ghost", "Ghost", "cancelled")]
        )

        assert outcome.deleted == 0
        assert outcome.details.deleted == []

    async def test_delete_failure_is_skipped(self, memory_store):
        upserter = _upserter(memory_store)
        await upserter.apply([_event("e1")])
        memory_store.fail_writes_for = {"e1"}

        outcome = await upserter.apply([], [Excluded("cal-1", "e1", "Consulta", "cancelled")])

        assert outcome.deleted == 0
        assert outcome.skipped == 1
        assert len(memory_store.events) == 1

    async def test_exclusion_only_call_creates_calendar(self, memory_store):
        await _upserter(memory_store).apply([], [Excluded("cal-new", "e1", None, "cancelled")])
        assert "cal-new" in memory_store.calendars

    async def test_empty_apply_touches_nothing(self, memory_store):
        outcome = await _upserter(memory_store).apply([])

        assert outcome.inserted == outcome.deleted == 0
        assert memory_store.calendars == {}
