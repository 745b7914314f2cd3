"""Sync orchestrator: drives one pass per calendar and one run per calendar set.

A pass moves through::

    IDLE -> FETCHING_PAGE -> CLASSIFYING -> UPSERTING -> (next page | PERSISTING_CURSOR) -> DONE

When the provider rejects the stored cursor (HTTP 410 or an equivalent
reason) the pass moves to CURSOR_INVALIDATED, the stored cursor is cleared,
and the pass restarts once from scratch in FULL_SYNC_RETRY using the computed
time window.  That restart is separate from the retry executor's attempt
budget.  Pages already applied before the rejection are kept.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

from calsync.classifier import Excluded, ExclusionRules, Kept, classify_item
from calsync.errors import MAX_ERROR_MESSAGE_LENGTH, ProviderError, redact_credentials
from calsync.logging import calendar_context
from calsync.metadata import MetadataParser, parse_event_metadata
from calsync.metrics import SyncMetrics
from calsync.models import (
    DETAIL_LIMIT_PER_RUN,
    CalendarSource,
    CalendarSyncSummary,
    NormalizedEvent,
    SyncOutcome,
)
from calsync.provider import CalendarPage
from calsync.store import EventStore
from calsync.upsert import DEFAULT_BATCH_SIZE, DEFAULT_DETAIL_LIMIT, EventUpserter
from calsync.window import RuntimeSettings, SyncWindow, compute_sync_window, resolve_runtime_settings

logger = logging.getLogger(__name__)


class SyncPhase(enum.StrEnum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    CLASSIFYING = "classifying"
    UPSERTING = "upserting"
    PERSISTING_CURSOR = "persisting_cursor"
    CURSOR_INVALIDATED = "cursor_invalidated"
    FULL_SYNC_RETRY = "full_sync_retry"
    DONE = "done"


class PageStreamLike(Protocol):
    pages_fetched: int
    truncated: bool
    next_cursor: str | None

    def __aiter__(self) -> AsyncIterator[CalendarPage]: ...


class PageFetcher(Protocol):
    """Anything that can open a page stream for one pass."""

    def iter_pages(
        self,
        calendar_external_id: str,
        *,
        cursor: str | None = None,
        window: SyncWindow | None = None,
        page_cap: int = ...,
    ) -> PageStreamLike: ...


def _error_summary(exc: BaseException) -> str:
    message = redact_credentials(str(exc) or exc.__class__.__name__)
    return message[:MAX_ERROR_MESSAGE_LENGTH]


class CalendarSyncEngine:
    """Keeps the local event store consistent with remote calendars.

    The engine holds no scheduling state; overlapping runs are prevented by
    :class:`calsync.scheduler.SyncScheduler`.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        store: EventStore,
        *,
        calendar_ids: Sequence[str] = (),
        runtime: RuntimeSettings | None = None,
        page_cap: int = 100,
        batch_size: int = DEFAULT_BATCH_SIZE,
        detail_limit: int = DEFAULT_DETAIL_LIMIT,
        concurrent_upserts: bool = True,
        parse_metadata: MetadataParser = parse_event_metadata,
        metrics: SyncMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._store = store
        self._calendar_ids = list(calendar_ids)
        self._runtime = runtime or RuntimeSettings()
        self._page_cap = page_cap
        self._batch_size = batch_size
        self._detail_limit = detail_limit
        self._concurrent_upserts = concurrent_upserts
        self._parse_metadata = parse_metadata
        self._metrics = metrics or SyncMetrics()
        self._clock = clock or (lambda: datetime.now(UTC))

    def _new_upserter(self) -> EventUpserter:
        return EventUpserter(
            self._store,
            batch_size=self._batch_size,
            detail_limit=self._detail_limit,
            concurrent=self._concurrent_upserts,
            clock=self._clock,
        )

    async def load_runtime(self) -> tuple[RuntimeSettings, ExclusionRules]:
        """Merge mutable settings over static config for one run.

        A failure to read settings is not fatal: static config is used.
        """
        try:
            settings = await self._store.load_settings()
        except Exception:
            logger.warning(
                "Failed to load calendar settings; using static configuration", exc_info=True
            )
            settings = {}
        runtime = resolve_runtime_settings(self._runtime, settings)
        return runtime, ExclusionRules.from_sources(runtime.exclude_patterns)

    async def run_sync(self, calendar_ids: Sequence[str] | None = None) -> SyncOutcome:
        """Sync every calendar in turn and return the aggregated outcome.

        A calendar that fails is logged and recorded in ``outcome.calendars``
        with its error; the remaining calendars are still processed.  Counts
        from pages applied before the failure are kept in the outcome.
        """
        targets = list(dict.fromkeys(calendar_ids if calendar_ids is not None else self._calendar_ids))
        run = SyncOutcome(started_at=self._clock())
        runtime, rules = await self.load_runtime()
        upserter = self._new_upserter()

        logger.info("Calendar sync run started for %d calendar(s)", len(targets))
        for calendar_id in targets:
            with calendar_context(calendar_id):
                summary = CalendarSyncSummary(calendar_id=calendar_id)
                outcome = SyncOutcome()
                try:
                    await self._sync_one(calendar_id, runtime, rules, upserter, summary, outcome)
                except Exception as exc:
                    summary.error = _error_summary(exc)
                    self._metrics.calendar_failed(calendar_id)
                    extra: dict[str, Any] = (
                        exc.to_log_fields() if isinstance(exc, ProviderError) else {}
                    )
                    logger.error(
                        "Calendar sync failed for '%s': %s",
                        calendar_id,
                        summary.error,
                        exc_info=True,
                        extra=extra,
                    )

                run.absorb(outcome, detail_limit=DETAIL_LIMIT_PER_RUN)
                run.calendars.append(summary)

        run.finished_at = self._clock()
        logger.info(
            "Calendar sync run finished: inserted=%d updated=%d skipped=%d deleted=%d failed=%d",
            run.inserted,
            run.updated,
            run.skipped,
            run.deleted,
            len(run.failed_calendars),
            extra=run.log_fields(),
        )
        return run

    async def sync_calendar(self, calendar_id: str) -> SyncOutcome:
        """Run one pass for a single calendar; failures propagate."""
        runtime, rules = await self.load_runtime()
        summary = CalendarSyncSummary(calendar_id=calendar_id)
        outcome = SyncOutcome()
        with calendar_context(calendar_id):
            await self._sync_one(
                calendar_id, runtime, rules, self._new_upserter(), summary, outcome
            )
        outcome.calendars.append(summary)
        return outcome

    async def _sync_one(
        self,
        calendar_id: str,
        runtime: RuntimeSettings,
        rules: ExclusionRules,
        upserter: EventUpserter,
        summary: CalendarSyncSummary,
        outcome: SyncOutcome,
    ) -> None:
        started = time.monotonic()
        try:
            source = await self._store.ensure_calendar(calendar_id)
            upserter.remember_calendar(calendar_id, source.id)
            cursor = source.resumption_cursor

            try:
                await self._run_pass(source, cursor, runtime, rules, upserter, summary, outcome)
            except ProviderError as exc:
                if cursor is None or not exc.is_cursor_invalidated:
                    raise
                logger.warning(
                    "Resumption cursor for calendar '%s' was rejected (code=%d, reason=%s); "
                    "clearing it and performing a full sync",
                    calendar_id,
                    exc.code,
                    exc.reason,
                )
                self._log_phase(calendar_id, SyncPhase.CURSOR_INVALIDATED)
                self._metrics.cursor_invalidated(calendar_id)
                await self._store.set_resumption_cursor(source.id, None)
                source = source.model_copy(update={"resumption_cursor": None})
                self._log_phase(calendar_id, SyncPhase.FULL_SYNC_RETRY)
                await self._run_pass(source, None, runtime, rules, upserter, summary, outcome)
        finally:
            self._metrics.record_pass_duration(calendar_id, (time.monotonic() - started) * 1000)

    def _log_phase(self, calendar_id: str, phase: SyncPhase) -> None:
        logger.debug("Calendar '%s' sync phase: %s", calendar_id, phase.value)

    async def _run_pass(
        self,
        source: CalendarSource,
        cursor: str | None,
        runtime: RuntimeSettings,
        rules: ExclusionRules,
        upserter: EventUpserter,
        summary: CalendarSyncSummary,
        outcome: SyncOutcome,
    ) -> None:
        calendar_id = source.external_id
        pass_started_at = self._clock()
        window = None
        if cursor is None:
            window = compute_sync_window(runtime, source.last_success_at, pass_started_at)
            logger.info(
                "Full sync of calendar '%s' over [%s, %s)",
                calendar_id,
                window.time_min.isoformat(),
                window.time_max.isoformat(),
            )
        else:
            logger.info("Incremental sync of calendar '%s' from stored cursor", calendar_id)

        outcome.full_sync = cursor is None
        if outcome.started_at is None:
            outcome.started_at = pass_started_at
        summary.full_sync = cursor is None
        stream = self._fetcher.iter_pages(
            calendar_id, cursor=cursor, window=window, page_cap=self._page_cap
        )

        self._log_phase(calendar_id, SyncPhase.FETCHING_PAGE)
        try:
            async for page in stream:
                self._log_phase(calendar_id, SyncPhase.CLASSIFYING)
                kept, excluded = self._classify_page(page, calendar_id, rules)
                summary.fetched += len(page.items)
                summary.excluded += len(excluded)

                self._log_phase(calendar_id, SyncPhase.UPSERTING)
                page_outcome = await upserter.apply(kept, excluded)
                self._metrics.record_events(
                    calendar_id,
                    inserted=page_outcome.inserted,
                    updated=page_outcome.updated,
                    skipped=page_outcome.skipped,
                    deleted=page_outcome.deleted,
                )
                outcome.absorb(page_outcome, detail_limit=self._detail_limit)
                self._log_phase(calendar_id, SyncPhase.FETCHING_PAGE)
        finally:
            summary.pages += stream.pages_fetched
            self._metrics.pages_fetched(calendar_id, stream.pages_fetched)

        outcome.truncated = stream.truncated
        summary.truncated = stream.truncated
        if stream.truncated:
            # The remaining pages were never read; keep the old cursor so the
            # next pass covers them.
            logger.warning(
                "Calendar '%s' pass ended at the page cap (%d); cursor not advanced",
                calendar_id,
                self._page_cap,
            )
        else:
            self._log_phase(calendar_id, SyncPhase.PERSISTING_CURSOR)
            await self._store.mark_calendar_synced(
                source.id, cursor=stream.next_cursor, synced_at=pass_started_at
            )
            summary.cursor_advanced = stream.next_cursor is not None
            if stream.next_cursor is None:
                logger.debug("Provider returned no new cursor for calendar '%s'", calendar_id)

        outcome.finished_at = self._clock()
        self._log_phase(calendar_id, SyncPhase.DONE)
        logger.info(
            "Calendar '%s' synced: inserted=%d updated=%d skipped=%d deleted=%d pages=%d",
            calendar_id,
            outcome.inserted,
            outcome.updated,
            outcome.skipped,
            outcome.deleted,
            summary.pages,
            extra=outcome.log_fields(),
        )

    def _classify_page(
        self, page: CalendarPage, calendar_id: str, rules: ExclusionRules
    ) -> tuple[list[NormalizedEvent], list[Excluded]]:
        kept: list[NormalizedEvent] = []
        excluded: list[Excluded] = []
        for raw in page.items:
            result = classify_item(raw, calendar_id, rules, self._parse_metadata)
            if isinstance(result, Kept):
                kept.append(result.event)
            elif isinstance(result, Excluded):
                excluded.append(result)
        return kept, excluded
