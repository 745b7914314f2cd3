"""Remote page fetcher for the Google Calendar ``events.list`` endpoint.

``GoogleCalendarClient.fetch_page`` issues exactly one list call, either in
cursor mode (``syncToken`` only) or in window mode (``timeMin``/``timeMax``/
``timeZone``/``orderBy``), always asking for soft-deleted items so
cancellations can be detected.  ``iter_pages`` wraps it in a
:class:`PageStream`: a lazy, finite, single-use async iterator over pages
bounded by a page cap.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from calsync.auth import AccessTokenProvider
from calsync.errors import CalendarSyncError, ProviderError
from calsync.retry import RandomFn, RetryPolicy, SleepFn, call_with_retry
from calsync.window import SyncWindow

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
LIST_EVENTS_CONTEXT = "calendar.events.list"
DEFAULT_PAGE_SIZE = 2500
DEFAULT_PAGE_CAP = 100


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CalendarPage:
    """One normalized ``events.list`` response."""

    items: list[dict[str, Any]]
    next_page_token: str | None = None
    next_cursor: str | None = None


def _optional_token(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class GoogleCalendarClient:
    """Authenticated, retrying client for one provider account."""

    def __init__(
        self,
        token_provider: AccessTokenProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        retry_policy: RetryPolicy | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        sleep: SleepFn | None = None,
        rand: RandomFn | None = None,
        on_retry: Callable[[ProviderError, int], None] | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._base_url = base_url.rstrip("/")
        # List calls are reads; they are always retried as idempotent.
        self._retry_policy = (retry_policy or RetryPolicy()).model_copy(update={"idempotent": True})
        self._page_size = page_size
        self._retry_kwargs: dict[str, Any] = {"on_retry": on_retry}
        if sleep is not None:
            self._retry_kwargs["sleep"] = sleep
        if rand is not None:
            self._retry_kwargs["rand"] = rand

    @property
    def name(self) -> str:
        return "google"

    def _build_list_params(
        self,
        *,
        cursor: str | None,
        window: SyncWindow | None,
        page_token: str | None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "true",
            "maxResults": self._page_size,
        }
        if cursor is not None:
            # syncToken is mutually exclusive with every window parameter.
            params["syncToken"] = cursor
        else:
            if window is None:
                raise ValueError("fetch_page requires either a cursor or a window")
            params["timeMin"] = google_rfc3339(window.time_min)
            params["timeMax"] = google_rfc3339(window.time_max)
            params["timeZone"] = window.time_zone
            params["orderBy"] = "startTime"
            if window.updated_min is not None:
                params["updatedMin"] = google_rfc3339(window.updated_min)
        if page_token is not None:
            params["pageToken"] = page_token
        return params

    async def _request_once(
        self, url: str, params: dict[str, Any], *, force_refresh: bool
    ) -> httpx.Response:
        access_token = await self._token_provider.get_access_token(force_refresh=force_refresh)
        return await self._http_client.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )

    async def _get_json(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        response = await self._request_once(url, params, force_refresh=False)
        if response.status_code == 401:
            self._token_provider.invalidate()
            response = await self._request_once(url, params, force_refresh=True)

        response.raise_for_status()

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarSyncError("Calendar API returned invalid JSON for events.list") from exc
        if not isinstance(payload, dict):
            raise CalendarSyncError("Calendar API returned an unexpected events.list payload")
        return payload

    async def fetch_page(
        self,
        calendar_external_id: str,
        *,
        cursor: str | None = None,
        window: SyncWindow | None = None,
        page_token: str | None = None,
    ) -> CalendarPage:
        """Fetch one page of events for *calendar_external_id*.

        Raises:
            ProviderError: classified failure once the retry budget is spent
                or the failure is not transient (HTTP 410 included).
        """
        params = self._build_list_params(cursor=cursor, window=window, page_token=page_token)
        path = f"/calendars/{quote(calendar_external_id, safe='')}/events"

        payload = await call_with_retry(
            lambda: self._get_json(path, params),
            self._retry_policy,
            context=LIST_EVENTS_CONTEXT,
            **self._retry_kwargs,
        )

        raw_items = payload.get("items")
        items = [item for item in raw_items if isinstance(item, dict)] if isinstance(raw_items, list) else []
        next_page_token = _optional_token(payload.get("nextPageToken"))
        # A cursor is only meaningful on the final page of a pass.
        next_cursor = None if next_page_token else _optional_token(payload.get("nextSyncToken"))
        return CalendarPage(items=items, next_page_token=next_page_token, next_cursor=next_cursor)

    def iter_pages(
        self,
        calendar_external_id: str,
        *,
        cursor: str | None = None,
        window: SyncWindow | None = None,
        page_cap: int = DEFAULT_PAGE_CAP,
    ) -> PageStream:
        return PageStream(
            self,
            calendar_external_id,
            cursor=cursor,
            window=window,
            page_cap=page_cap,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


@dataclass
class PageStream:
    """Single-use async iterator over the pages of one pass.

    Iteration ends when a page carries no ``nextPageToken`` or when
    ``page_cap`` pages have been fetched; the latter sets ``truncated``.
    ``next_cursor`` holds the resumption cursor surfaced by the final page.
    """

    client: GoogleCalendarClient
    calendar_external_id: str
    cursor: str | None = None
    window: SyncWindow | None = None
    page_cap: int = DEFAULT_PAGE_CAP
    pages_fetched: int = 0
    truncated: bool = False
    next_cursor: str | None = None
    _page_token: str | None = field(default=None, repr=False)
    _started: bool = field(default=False, repr=False)
    _exhausted: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if self.page_cap < 1:
            raise ValueError("page_cap must be at least 1")

    def __aiter__(self) -> PageStream:
        if self._started:
            raise RuntimeError("PageStream cannot be restarted")
        self._started = True
        return self

    async def __anext__(self) -> CalendarPage:
        if self._exhausted:
            raise StopAsyncIteration

        if self.pages_fetched >= self.page_cap:
            self._exhausted = True
            self.truncated = True
            logger.warning(
                "Reached page cap for calendar '%s' (pages=%d); stopping pagination",
                self.calendar_external_id,
                self.pages_fetched,
            )
            raise StopAsyncIteration

        page = await self.client.fetch_page(
            self.calendar_external_id,
            cursor=self.cursor,
            window=self.window,
            page_token=self._page_token,
        )
        self.pages_fetched += 1
        self._page_token = page.next_page_token
        if page.next_page_token is None:
            self._exhausted = True
            self.next_cursor = page.next_cursor
        return page
