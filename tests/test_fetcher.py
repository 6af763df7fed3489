"""Tests for the remote event fetcher and sync-window computation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from calsync.config import SyncSettings
from calsync.errors import ProviderUnavailableError, ReconciliationConflictError
from calsync.fetcher import EventFetcher, compute_sync_window
from tests.fakes import NOW, FakeCalendarClient, google_event, provider_down

pytestmark = pytest.mark.unit

WINDOW_START = NOW - timedelta(days=30)
WINDOW_END = NOW + timedelta(days=90)


class TestComputeSyncWindow:
    def test_default_window(self):
        window = compute_sync_window(NOW, SyncSettings())
        assert window.start == NOW - timedelta(days=30)
        assert window.end == NOW + timedelta(days=90)

    def test_recent_checkpoint_keeps_lookback(self):
        window = compute_sync_window(NOW, SyncSettings(), NOW - timedelta(hours=1))
        assert window.start == NOW - timedelta(days=30)

    def test_stale_checkpoint_extends_start(self):
        last_sync = NOW - timedelta(days=45)
        window = compute_sync_window(NOW, SyncSettings(), last_sync)
        assert window.start == last_sync

    def test_stale_checkpoint_extension_is_capped(self):
        window = compute_sync_window(NOW, SyncSettings(), NOW - timedelta(days=400))
        assert window.start == NOW - timedelta(days=60)


class TestFetchEvents:
    async def test_walks_every_page_before_returning(self):
        client = FakeCalendarClient(
            pages=[
                {"items": [google_event("e1")], "nextPageToken": "p2"},
                {"items": [google_event("e2")], "nextPageToken": "p3"},
                {"items": [google_event("e3")]},
            ]
        )
        fetcher = EventFetcher(client, SyncSettings())

        events = await fetcher.fetch_events("tok", "primary", WINDOW_START, WINDOW_END)

        assert {e.id for e in events} == {"e1", "e2", "e3"}
        assert [call["page_token"] for call in client.list_calls] == [None, "p2", "p3"]
        for call in client.list_calls:
            assert call["time_min"] == WINDOW_START
            assert call["time_max"] == WINDOW_END
            assert call["max_results"] == 500
            assert call["access_token"] == "tok"
            assert call["calendar_id"] == "primary"

    async def test_results_are_chronological_with_undated_first(self):
        client = FakeCalendarClient(
            pages=[
                {
                    "items": [
                        google_event("late", start=NOW + timedelta(days=5)),
                        google_event("gone", status="cancelled"),
                        google_event("early", start=NOW + timedelta(days=1)),
                    ]
                }
            ]
        )
        events = await EventFetcher(client, SyncSettings()).fetch_events(
            "tok", "primary", WINDOW_START, WINDOW_END
        )
        assert [e.id for e in events] == ["gone", "early", "late"]

    async def test_cancelled_events_are_returned(self):
        client = FakeCalendarClient(pages=[{"items": [google_event("e2", status="cancelled")]}])
        events = await EventFetcher(client, SyncSettings()).fetch_events(
            "tok", "primary", WINDOW_START, WINDOW_END
        )
        assert len(events) == 1
        assert events[0].is_cancelled

    async def test_empty_calendar(self):
        client = FakeCalendarClient(pages=[{}])
        events = await EventFetcher(client, SyncSettings()).fetch_events(
            "tok", "primary", WINDOW_START, WINDOW_END
        )
        assert events == []

    async def test_page_failure_discards_partial_results(self):
        client = FakeCalendarClient(pages=[{"items": [google_event("e1")], "nextPageToken": "p2"}])
        fetcher = EventFetcher(client, SyncSettings())
        original = client.list_events_page

        async def _second_page_fails(**kwargs):
            if kwargs["page_token"] == "p2":
                raise provider_down(500)
            return await original(**kwargs)

        client.list_events_page = _second_page_fails

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await fetcher.fetch_events("tok", "primary", WINDOW_START, WINDOW_END)
        assert exc_info.value.status_code == 500

    async def test_page_limit(self):
        client = FakeCalendarClient(pages=[{"items": [], "nextPageToken": "again"}])
        fetcher = EventFetcher(client, SyncSettings(max_pages=3))

        with pytest.raises(ProviderUnavailableError, match="exceeded 3 pages"):
            await fetcher.fetch_events("tok", "primary", WINDOW_START, WINDOW_END)
        assert len(client.list_calls) == 3

    async def test_invalid_window(self):
        fetcher = EventFetcher(FakeCalendarClient(), SyncSettings())
        with pytest.raises(ValueError, match="window_end"):
            await fetcher.fetch_events("tok", "primary", WINDOW_END, WINDOW_START)

    async def test_items_not_a_list(self):
        client = FakeCalendarClient(pages=[{"items": {"id": "e1"}}])
        with pytest.raises(ProviderUnavailableError, match="not a list"):
            await EventFetcher(client, SyncSettings()).fetch_events(
                "tok", "primary", WINDOW_START, WINDOW_END
            )

    async def test_malformed_item_names_the_event(self):
        bad = google_event("e7")
        bad["start"] = {"dateTime": "not-a-time"}
        client = FakeCalendarClient(pages=[{"items": [google_event("e1"), bad]}])

        with pytest.raises(ReconciliationConflictError) as exc_info:
            await EventFetcher(client, SyncSettings()).fetch_events(
                "tok", "primary", WINDOW_START, WINDOW_END
            )
        assert exc_info.value.event_id == "e7"

    async def test_item_without_id(self):
        client = FakeCalendarClient(pages=[{"items": [{"status": "confirmed"}]}])
        with pytest.raises(ReconciliationConflictError):
            await EventFetcher(client, SyncSettings()).fetch_events(
                "tok", "primary", WINDOW_START, WINDOW_END
            )
