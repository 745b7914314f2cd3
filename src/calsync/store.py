"""Local event store: calendar sources, event projections and settings."""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any

import asyncpg

from calsync.models import RECORD_COLUMNS, CalendarSource, EventRecord
from calsync.state import load_settings as _load_settings

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ("calendar_id", "external_event_id")
_VALUE_COLUMNS = tuple(column for column in RECORD_COLUMNS if column not in _KEY_COLUMNS)

_INSERT_EVENT_SQL = f"""
    INSERT INTO calendar_events ({", ".join(RECORD_COLUMNS)})
    VALUES ({", ".join(f"${index}" for index in range(1, len(RECORD_COLUMNS) + 1))})
    ON CONFLICT (calendar_id, external_event_id) DO UPDATE SET
        {", ".join(f"{column} = EXCLUDED.{column}" for column in _VALUE_COLUMNS)},
        updated_at = now()
"""

_UPDATE_EVENT_SQL = f"""
    UPDATE calendar_events SET
        {", ".join(f"{column} = ${index}" for index, column in enumerate(_VALUE_COLUMNS, start=3))},
        updated_at = now()
    WHERE calendar_id = $1 AND external_event_id = $2
"""

_SELECT_EVENT_SQL = f"""
    SELECT {", ".join(RECORD_COLUMNS)}
    FROM calendar_events
    WHERE calendar_id = $1 AND external_event_id = $2
"""

_SOURCE_COLUMNS = "id, external_id, name, resumption_cursor, last_success_at"


def _row_to_source(row: Any) -> CalendarSource:
    return CalendarSource(
        id=row["id"],
        external_id=row["external_id"],
        name=row["name"],
        resumption_cursor=row["resumption_cursor"],
        last_success_at=row["last_success_at"],
    )


class EventStore(abc.ABC):
    """Persistence contract used by the upsert engine and the orchestrator."""

    @abc.abstractmethod
    async def ensure_calendar(self, external_id: str, name: str | None = None) -> CalendarSource:
        """Return the source for *external_id*, creating it on first sight."""
        ...

    @abc.abstractmethod
    async def get_calendar(self, external_id: str) -> CalendarSource | None: ...

    @abc.abstractmethod
    async def set_resumption_cursor(self, calendar_id: int, cursor: str | None) -> None: ...

    @abc.abstractmethod
    async def mark_calendar_synced(
        self, calendar_id: int, *, cursor: str | None, synced_at: datetime
    ) -> None:
        """Record a completed pass; a ``None`` cursor leaves the stored one untouched."""
        ...

    @abc.abstractmethod
    async def find_event(self, calendar_id: int, external_event_id: str) -> EventRecord | None: ...

    @abc.abstractmethod
    async def insert_event(self, record: EventRecord) -> None: ...

    @abc.abstractmethod
    async def update_event(self, record: EventRecord) -> None: ...

    @abc.abstractmethod
    async def delete_event(self, calendar_id: int, external_event_id: str) -> bool:
        """Delete one record; returns whether a row was removed."""
        ...

    @abc.abstractmethod
    async def load_settings(self) -> dict[str, str]:
        """Return mutable ``calendar.*`` settings that override static config."""
        ...


class PostgresEventStore(EventStore):
    """asyncpg-backed store over the ``calendar_sources``/``calendar_events`` tables."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_calendar(self, external_id: str, name: str | None = None) -> CalendarSource:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO calendar_sources (external_id, name)
            VALUES ($1, $2)
            ON CONFLICT (external_id) DO UPDATE SET
                name = COALESCE(EXCLUDED.name, calendar_sources.name),
                updated_at = now()
            RETURNING {_SOURCE_COLUMNS}
            """,
            external_id,
            name,
        )
        return _row_to_source(row)

    async def get_calendar(self, external_id: str) -> CalendarSource | None:
        row = await self._pool.fetchrow(
            f"SELECT {_SOURCE_COLUMNS} FROM calendar_sources WHERE external_id = $1",
            external_id,
        )
        return _row_to_source(row) if row is not None else None

    async def set_resumption_cursor(self, calendar_id: int, cursor: str | None) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_sources
            SET resumption_cursor = $2, updated_at = now()
            WHERE id = $1
            """,
            calendar_id,
            cursor,
        )

    async def mark_calendar_synced(
        self, calendar_id: int, *, cursor: str | None, synced_at: datetime
    ) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_sources
            SET resumption_cursor = COALESCE($2, resumption_cursor),
                last_success_at = $3,
                updated_at = now()
            WHERE id = $1
            """,
            calendar_id,
            cursor,
            synced_at,
        )

    async def find_event(self, calendar_id: int, external_event_id: str) -> EventRecord | None:
        row = await self._pool.fetchrow(_SELECT_EVENT_SQL, calendar_id, external_event_id)
        if row is None:
            return None
        return EventRecord(**{column: row[column] for column in RECORD_COLUMNS})

    async def insert_event(self, record: EventRecord) -> None:
        await self._pool.execute(
            _INSERT_EVENT_SQL,
            *(getattr(record, column) for column in RECORD_COLUMNS),
        )

    async def update_event(self, record: EventRecord) -> None:
        await self._pool.execute(
            _UPDATE_EVENT_SQL,
            record.calendar_id,
            record.external_event_id,
            *(getattr(record, column) for column in _VALUE_COLUMNS),
        )

    async def delete_event(self, calendar_id: int, external_event_id: str) -> bool:
        result = await self._pool.execute(
            "DELETE FROM calendar_events WHERE calendar_id = $1 AND external_event_id = $2",
            calendar_id,
            external_event_id,
        )
        # asyncpg returns the command tag, e.g. "DELETE 1".
        return result.split()[-1] != "0"

    async def load_settings(self) -> dict[str, str]:
        return await _load_settings(self._pool)
