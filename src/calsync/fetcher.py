"""Remote Event Fetcher.

Queries the provider for a bounded time window, walks every page, and only
returns once the whole window has been collected, so the caller never sees a
partial set.  Cancelled events are requested explicitly so deletions can be
reconciled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from calsync.config import SyncSettings
from calsync.errors import ProviderUnavailableError, ReconciliationConflictError
from calsync.google import GoogleCalendarClient
from calsync.models import RemoteEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime


def compute_sync_window(
    now: datetime,
    settings: SyncSettings,
    last_sync_at: datetime | None = None,
) -> SyncWindow:
    """Window of ``[now - lookback, now + horizon]``.

    When the checkpoint is older than the lookback (missed runs), the start is
    pulled back to the checkpoint, but never further than twice the lookback.
    """
    lookback = timedelta(days=settings.lookback_days)
    start = now - lookback
    if last_sync_at is not None and last_sync_at < start:
        start = max(last_sync_at, now - 2 * lookback)
    return SyncWindow(start=start, end=now + timedelta(days=settings.horizon_days))


def _sort_key(event: RemoteEvent) -> tuple[int, datetime | None]:
    # Cancelled instances may arrive without a start; keep them ahead of dated ones.
    if event.start is None:
        return (0, None)
    return (1, event.start.sort_key())


class EventFetcher:
    def __init__(self, client: GoogleCalendarClient, settings: SyncSettings) -> None:
        self._client = client
        self._max_results = settings.max_results
        self._max_pages = settings.max_pages

    async def fetch_events(
        self,
        access_token: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RemoteEvent]:
        """Return every event in the window, chronological by start time.

        Raises
        ------
        ProviderUnavailableError
            Any non-2xx page, transport failure, or a page count over ``max_pages``.
        ReconciliationConflictError
            A returned item cannot be normalized.
        """
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")

        events: list[RemoteEvent] = []
        page_token: str | None = None
        pages = 0

        while True:
            if pages >= self._max_pages:
                raise ProviderUnavailableError(
                    f"calendar '{calendar_id}' exceeded {self._max_pages} pages for one window"
                )
            payload = await self._client.list_events_page(
                access_token=access_token,
                calendar_id=calendar_id,
                time_min=window_start,
                time_max=window_end,
                max_results=self._max_results,
                page_token=page_token,
            )
            pages += 1
            events.extend(self._normalize_items(payload.get("items")))

            next_page = payload.get("nextPageToken")
            if not isinstance(next_page, str) or not next_page.strip():
                break
            page_token = next_page.strip()

        events.sort(key=_sort_key)
        logger.info(
            "Fetched %d remote events from calendar %s across %d page(s)",
            len(events),
            calendar_id,
            pages,
        )
        return events

    @staticmethod
    def _normalize_items(items: Any) -> list[RemoteEvent]:
        if items is None:
            return []
        if not isinstance(items, list):
            raise ProviderUnavailableError("events response 'items' is not a list")

        normalized: list[RemoteEvent] = []
        for item in items:
            if not isinstance(item, dict):
                raise ReconciliationConflictError(None, "event item is not a JSON object")
            try:
                normalized.append(RemoteEvent.from_google(item))
            except ValueError as exc:
                event_id = item.get("id") if isinstance(item.get("id"), str) else None
                raise ReconciliationConflictError(event_id, str(exc)) from exc
        return normalized
