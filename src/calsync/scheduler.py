"""Periodic trigger around :class:`calsync.sync.CalendarSyncEngine`.

The scheduler owns the ``{last_run_at, running}`` state that prevents
overlapping runs.  ``last_run_at`` is persisted in the ``state`` table so the
minimum-interval guard survives restarts; ``running`` is process-local.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from calsync.models import SyncOutcome
from calsync.state import state_get, state_set
from calsync.sync import CalendarSyncEngine

logger = logging.getLogger(__name__)

LAST_RUN_STATE_KEY = "calsync::scheduler::last_run_at"


@dataclass
class SchedulerState:
    last_run_at: datetime | None = None
    running: bool = False
    running_since: datetime | None = None


class SyncScheduler:
    """Runs the engine on an interval, skipping triggers that would overlap."""

    def __init__(
        self,
        engine: CalendarSyncEngine,
        *,
        pool: Any | None = None,
        interval_minutes: int = 15,
        min_interval_minutes: int = 5,
        stale_run_minutes: int = 15,
        state: SchedulerState | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._pool = pool
        self._interval = timedelta(minutes=interval_minutes)
        self._min_interval = timedelta(minutes=min_interval_minutes)
        self._stale_after = timedelta(minutes=stale_run_minutes)
        self.state = state or SchedulerState()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._force_sync_event = asyncio.Event()
        self._state_loaded = False
        self._current_run: object | None = None

    async def _load_last_run(self) -> None:
        if self._state_loaded or self._pool is None:
            return
        self._state_loaded = True
        try:
            raw = await state_get(self._pool, LAST_RUN_STATE_KEY)
        except Exception as exc:
            logger.warning("Failed to load scheduler state: %s", exc)
            return
        if isinstance(raw, str):
            try:
                persisted = datetime.fromisoformat(raw)
            except ValueError:
                logger.warning("Ignoring malformed %s value: %r", LAST_RUN_STATE_KEY, raw)
                return
            if self.state.last_run_at is None or persisted > self.state.last_run_at:
                self.state.last_run_at = persisted

    async def _save_last_run(self, value: datetime) -> None:
        if self._pool is None:
            return
        try:
            await state_set(self._pool, LAST_RUN_STATE_KEY, value.isoformat())
        except Exception as exc:
            logger.warning("Failed to persist scheduler state: %s", exc)

    def _skip_reason(self, now: datetime) -> str | None:
        if self.state.running:
            since = self.state.running_since
            if since is not None and now - since >= self._stale_after:
                logger.warning(
                    "Previous sync run started at %s looks stale; starting a new run",
                    since.isoformat(),
                )
                return None
            return "a sync run is already in progress"
        last = self.state.last_run_at
        if last is not None and now - last < self._min_interval:
            return f"last run started at {last.isoformat()}, within the minimum interval"
        return None

    async def trigger(self, source: str = "schedule") -> SyncOutcome | None:
        """Run one sync unless a guard says to skip; returns ``None`` when skipped."""
        await self._load_last_run()
        now = self._clock()
        reason = self._skip_reason(now)
        if reason is not None:
            logger.info("Skipping %s sync trigger: %s", source, reason)
            return None

        run_token = object()
        self._current_run = run_token
        self.state.running = True
        self.state.running_since = now
        self.state.last_run_at = now
        await self._save_last_run(now)
        try:
            logger.info("Starting calendar sync (trigger=%s)", source)
            return await self._engine.run_sync()
        finally:
            # A stale run that finishes late must not clear the flag of the
            # run that replaced it.
            if self._current_run is run_token:
                self._current_run = None
                self.state.running = False
                self.state.running_since = None

    def request_sync(self) -> None:
        """Wake :meth:`run_forever` for an immediate run."""
        self._force_sync_event.set()

    async def run_forever(
        self,
        *,
        on_outcome: Callable[[SyncOutcome], Awaitable[None] | None] | None = None,
    ) -> None:
        """Poll at the configured interval, waking early on :meth:`request_sync`."""
        interval_seconds = self._interval.total_seconds()
        logger.debug("Calendar sync poller loop started (interval=%ds)", interval_seconds)
        source = "schedule"
        while True:
            try:
                outcome = await self.trigger(source)
                if outcome is not None and on_outcome is not None:
                    result = on_outcome(outcome)
                    if asyncio.iscoroutine(result):
                        await result
            except Exception as exc:
                logger.error("Calendar sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._force_sync_event.wait(), timeout=interval_seconds)
                self._force_sync_event.clear()
                source = "manual"
                logger.debug("Calendar sync poller: immediate sync requested")
            except TimeoutError:
                source = "schedule"
