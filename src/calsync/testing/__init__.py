"""Test support utilities for the calsync package.

``InMemoryEventStore`` implements :class:`calsync.store.EventStore` on plain
dicts and records every write, so tests can assert both end state and the
absence of redundant writes.  It has no dependency on pytest.
"""

from __future__ import annotations

from datetime import datetime

from calsync.models import CalendarSource, EventRecord
from calsync.store import EventStore


class InMemoryEventStore(EventStore):
    def __init__(self, settings: dict[str, str] | None = None) -> None:
        self.calendars: dict[str, CalendarSource] = {}
        self.events: dict[tuple[int, str], EventRecord] = {}
        self.settings: dict[str, str] = dict(settings or {})
        self.writes: list[tuple[str, tuple[int, str]]] = []
        self.cursor_history: list[tuple[str, str | None]] = []
        self.fail_writes_for: set[str] = set()
        self.fail_lookups_for: set[str] = set()
        self.fail_settings = False
        self._next_id = 1

    def _maybe_fail(self, external_event_id: str) -> None:
        if external_event_id in self.fail_writes_for:
            raise RuntimeError(f"simulated write failure for {external_event_id}")

    async def ensure_calendar(self, external_id: str, name: str | None = None) -> CalendarSource:
        source = self.calendars.get(external_id)
        if source is None:
            source = CalendarSource(id=self._next_id, external_id=external_id, name=name)
            self._next_id += 1
            self.calendars[external_id] = source
        return source.model_copy()

    async def get_calendar(self, external_id: str) -> CalendarSource | None:
        source = self.calendars.get(external_id)
        return source.model_copy() if source is not None else None

    def _by_id(self, calendar_id: int) -> CalendarSource:
        for source in self.calendars.values():
            if source.id == calendar_id:
                return source
        raise KeyError(calendar_id)

    async def set_resumption_cursor(self, calendar_id: int, cursor: str | None) -> None:
        source = self._by_id(calendar_id)
        source.resumption_cursor = cursor
        self.cursor_history.append((source.external_id, cursor))

    async def mark_calendar_synced(
        self, calendar_id: int, *, cursor: str | None, synced_at: datetime
    ) -> None:
        source = self._by_id(calendar_id)
        if cursor is not None:
            source.resumption_cursor = cursor
            self.cursor_history.append((source.external_id, cursor))
        source.last_success_at = synced_at

    async def find_event(self, calendar_id: int, external_event_id: str) -> EventRecord | None:
        if external_event_id in self.fail_lookups_for:
            raise RuntimeError(f"simulated lookup failure for {external_event_id}")
        record = self.events.get((calendar_id, external_event_id))
        return record.model_copy() if record is not None else None

    async def insert_event(self, record: EventRecord) -> None:
        self._maybe_fail(record.external_event_id)
        self.events[record.key] = record.model_copy()
        self.writes.append(("insert", record.key))

    async def update_event(self, record: EventRecord) -> None:
        self._maybe_fail(record.external_event_id)
        self.events[record.key] = record.model_copy()
        self.writes.append(("update", record.key))

    async def delete_event(self, calendar_id: int, external_event_id: str) -> bool:
        self._maybe_fail(external_event_id)
        removed = self.events.pop((calendar_id, external_event_id), None)
        if removed is not None:
            self.writes.append(("delete", (calendar_id, external_event_id)))
        return removed is not None

    async def load_settings(self) -> dict[str, str]:
        if self.fail_settings:
            raise RuntimeError("simulated settings failure")
        return dict(self.settings)
