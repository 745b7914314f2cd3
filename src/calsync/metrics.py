"""OpenTelemetry metrics instruments for the calendar sync engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during process startup.  When
OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global no-op MeterProvider is
used and all recordings are silent no-ops.

Instruments
-----------
  calsync.pages_fetched          Counter
      Provider pages fetched across all passes.

  calsync.events                 Counter  (label: outcome=inserted|updated|skipped|deleted)
      Per-record upsert outcomes.

  calsync.retries                Counter  (label: code)
      Backoff retries issued by the retry executor.

  calsync.cursor_invalidations   Counter
      Passes that fell back to a full sync after the provider rejected the cursor.

  calsync.calendar_failures      Counter
      Calendars whose pass failed during a run.

  calsync.pass_duration_ms       Histogram
      Wall-clock duration of one calendar pass.

Every instrument carries a ``calendar`` label except ``calsync.retries``.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise the global no-op provider
    is used.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


def _pages_fetched() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.pages_fetched",
        description="Provider pages fetched by calendar sync passes",
        unit="pages",
    )


def _events() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.events",
        description="Event upsert outcomes (label: outcome)",
        unit="events",
    )


def _retries() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.retries",
        description="Remote call retries issued after transient failures",
        unit="retries",
    )


def _cursor_invalidations() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.cursor_invalidations",
        description="Passes restarted as full syncs after cursor invalidation",
        unit="passes",
    )


def _calendar_failures() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.calendar_failures",
        description="Calendars whose sync pass failed",
        unit="calendars",
    )


def _pass_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="calsync.pass_duration_ms",
        description="Duration of one calendar sync pass in milliseconds",
        unit="ms",
    )


class SyncMetrics:
    """Convenience wrapper around the sync instruments.

    Instruments are created on first use, so it is safe to construct this
    object before ``init_metrics`` is called.
    """

    def __init__(self) -> None:
        self.__pages: metrics.Counter | None = None
        self.__events: metrics.Counter | None = None
        self.__retries: metrics.Counter | None = None
        self.__invalidations: metrics.Counter | None = None
        self.__failures: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None

    @property
    def _pages(self) -> metrics.Counter:
        if self.__pages is None:
            self.__pages = _pages_fetched()
        return self.__pages

    @property
    def _events(self) -> metrics.Counter:
        if self.__events is None:
            self.__events = _events()
        return self.__events

    @property
    def _retries(self) -> metrics.Counter:
        if self.__retries is None:
            self.__retries = _retries()
        return self.__retries

    @property
    def _invalidations(self) -> metrics.Counter:
        if self.__invalidations is None:
            self.__invalidations = _cursor_invalidations()
        return self.__invalidations

    @property
    def _failures(self) -> metrics.Counter:
        if self.__failures is None:
            self.__failures = _calendar_failures()
        return self.__failures

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = _pass_duration_ms()
        return self.__duration

    def pages_fetched(self, calendar: str, count: int) -> None:
        if count:
            self._pages.add(count, {"calendar": calendar})

    def record_events(
        self, calendar: str, *, inserted: int, updated: int, skipped: int, deleted: int
    ) -> None:
        for outcome, count in (
            ("inserted", inserted),
            ("updated", updated),
            ("skipped", skipped),
            ("deleted", deleted),
        ):
            if count:
                self._events.add(count, {"calendar": calendar, "outcome": outcome})

    def retry(self, code: int) -> None:
        self._retries.add(1, {"code": str(code)})

    def cursor_invalidated(self, calendar: str) -> None:
        self._invalidations.add(1, {"calendar": calendar})

    def calendar_failed(self, calendar: str) -> None:
        self._failures.add(1, {"calendar": calendar})

    def record_pass_duration(self, calendar: str, duration_ms: float) -> None:
        self._duration.record(duration_ms, {"calendar": calendar})
