"""
Paginator and sync window tests.

Guards against the provider's repeating-cursor bug: a page that adds no
unseen ids must end the walk.
"""
import asyncio
from datetime import datetime

from shipsync.connectors.base_connector import APIError, RateLimitedError
from shipsync.connectors.pagination import (
    CreationWindow,
    ModificationWindow,
    Page,
    Paginator,
    window_from_options,
)


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _cursor_pages(pages):
    """fetch_page over a dict cursor -> Page, recording the cursors asked for."""
    asked = []

    async def fetch(cursor):
        asked.append(cursor)
        return pages[cursor]

    return fetch, asked


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------

def test_creation_window_filters_on_created_date():
    now = datetime(2026, 3, 10, 12, 0, 0)
    window = CreationWindow(days=7)
    start, end = window.resolve(now)
    assert (start, end) == (datetime(2026, 3, 3, 12, 0, 0), now)
    assert window.filter_params(start, end) == {
        "StartDate": "2026-03-03T12:00:00.000Z",
        "EndDate": "2026-03-10T12:00:00.000Z",
    }
    assert window.is_full and window.mode == "full"


def test_modification_window_filters_on_last_update():
    now = datetime(2026, 3, 10, 12, 0, 0)
    window = ModificationWindow(minutes=15)
    params = window.filter_params(*window.resolve(now))
    assert params == {
        "LastUpdateStartDate": "2026-03-10T11:45:00.000Z",
        "LastUpdateEndDate": "2026-03-10T12:00:00.000Z",
    }
    assert not window.is_full and window.mode == "incremental"


def test_window_from_options():
    assert window_from_options(days=3) == CreationWindow(days=3)
    assert window_from_options(minutes=30) == ModificationWindow(minutes=30)
    assert window_from_options() == CreationWindow(days=7)


# ---------------------------------------------------------------------------
# Cursor walks
# ---------------------------------------------------------------------------

def test_repeating_cursor_terminates_after_one_page_of_seen_ids():
    pages = {
        None: Page([{"id": 1}, {"id": 2}], next_cursor="A"),
        "A": Page([{"id": 3}], next_cursor="B"),
        "B": Page([{"id": 3}], next_cursor="C"),  # upstream bug: same records again
        "C": Page([{"id": 3}], next_cursor="D"),
    }
    fetch, asked = _cursor_pages(pages)
    result = _run(Paginator(fetch, mode=Paginator.CURSOR).collect())

    assert [r["id"] for r in result.records] == [1, 2, 3]
    assert asked == [None, "A", "B"]
    assert result.complete


def test_same_cursor_returned_stops():
    pages = {
        None: Page([{"id": 1}], next_cursor="A"),
        "A": Page([{"id": 2}], next_cursor="A"),
    }
    fetch, asked = _cursor_pages(pages)
    result = _run(Paginator(fetch, mode=Paginator.CURSOR).collect())
    assert [r["id"] for r in result.records] == [1, 2]
    assert asked == [None, "A"]


def test_duplicates_within_walk_are_dropped():
    pages = {
        None: Page([{"id": 1}, {"id": 2}], next_cursor="A"),
        "A": Page([{"id": 2}, {"id": 3}], next_cursor=None),
    }
    fetch, _ = _cursor_pages(pages)
    result = _run(Paginator(fetch, mode=Paginator.CURSOR).collect())
    assert [r["id"] for r in result.records] == [1, 2, 3]


def test_rate_limit_stops_and_keeps_collected_records():
    async def fetch(cursor):
        if cursor is None:
            return Page([{"id": 1}], next_cursor="A")
        raise RateLimitedError("orders: rate limited")

    result = _run(Paginator(fetch, mode=Paginator.CURSOR).collect())
    assert [r["id"] for r in result.records] == [1]
    assert result.rate_limited
    assert result.error is None
    assert not result.complete


def test_api_error_is_reported_not_raised():
    async def fetch(cursor):
        if cursor is None:
            return Page([{"id": 1}], next_cursor="A")
        raise APIError("orders: HTTP 500", status=500)

    result = _run(Paginator(fetch, mode=Paginator.CURSOR, label="orders").collect())
    assert [r["id"] for r in result.records] == [1]
    assert "HTTP 500" in result.error
    assert not result.complete


def test_network_error_is_reported_not_raised():
    async def fetch(cursor):
        raise ConnectionResetError("peer closed")

    result = _run(Paginator(fetch, mode=Paginator.CURSOR).collect())
    assert result.records == []
    assert "ConnectionResetError" in result.error


def test_page_cap_marks_result_incomplete():
    async def fetch(cursor):
        n = int(cursor or 0)
        return Page([{"id": n}], next_cursor=str(n + 1))

    result = _run(Paginator(fetch, mode=Paginator.CURSOR, max_pages=3).collect())
    assert len(result.records) == 3
    assert result.capped
    assert not result.complete


# ---------------------------------------------------------------------------
# Page-number walks
# ---------------------------------------------------------------------------

def test_page_mode_honours_total_pages():
    asked = []

    async def fetch(page):
        asked.append(page)
        return Page([{"id": page * 10}, {"id": page * 10 + 1}], total_pages=2)

    result = _run(Paginator(fetch, mode=Paginator.PAGE, page_limit=2).collect())
    assert asked == [1, 2]
    assert len(result.records) == 4


def test_page_mode_stops_on_short_page_without_header():
    asked = []

    async def fetch(page):
        asked.append(page)
        if page == 1:
            return Page([{"id": 1}, {"id": 2}])
        return Page([{"id": 3}])

    result = _run(Paginator(fetch, mode=Paginator.PAGE, page_limit=2).collect())
    assert asked == [1, 2]
    assert [r["id"] for r in result.records] == [1, 2, 3]


def test_empty_first_page():
    async def fetch(page):
        return Page([])

    result = _run(Paginator(fetch, mode=Paginator.PAGE, page_limit=250).collect())
    assert result.records == []
    assert result.pages == 1
    assert result.complete
