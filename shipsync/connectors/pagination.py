"""
Sync windows and pagination over the provider's list endpoints.

Two window shapes drive a sync:
  - CreationWindow(days): full/periodic syncs, filtered on creation date.
    Only these are complete enough to drive reconciliation.
  - ModificationWindow(minutes): incremental syncs, filtered on last update.

The Paginator walks page-number or cursor endpoints. The provider has been
seen returning the same cursor (and the same records) forever, so a page
that contributes no unseen ids ends the walk, and a page cap bounds it.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, ClassVar, Dict, List, Optional, Tuple, Union

from shipsync.config import get_settings
from shipsync.connectors.base_connector import APIError, RateLimitedError
from shipsync.utils.helpers import isoformat_z
from shipsync.utils.logger import log

settings = get_settings()


# ─────────────────────────────────────────
# Sync windows
# ─────────────────────────────────────────


@dataclass(frozen=True)
class CreationWindow:
    """Orders created in the last `days` days."""
    days: int = 7

    mode: ClassVar[str] = "full"
    is_full: ClassVar[bool] = True

    def resolve(self, now: datetime) -> Tuple[datetime, datetime]:
        return now - timedelta(days=self.days), now

    def filter_params(self, start: datetime, end: datetime) -> Dict[str, str]:
        return {"StartDate": isoformat_z(start), "EndDate": isoformat_z(end)}

    def describe(self) -> str:
        return f"{self.days}d"


@dataclass(frozen=True)
class ModificationWindow:
    """Orders modified in the last `minutes` minutes."""
    minutes: int = 15

    mode: ClassVar[str] = "incremental"
    is_full: ClassVar[bool] = False

    def resolve(self, now: datetime) -> Tuple[datetime, datetime]:
        return now - timedelta(minutes=self.minutes), now

    def filter_params(self, start: datetime, end: datetime) -> Dict[str, str]:
        return {"LastUpdateStartDate": isoformat_z(start), "LastUpdateEndDate": isoformat_z(end)}

    def describe(self) -> str:
        return f"{self.minutes}min"


SyncWindow = Union[CreationWindow, ModificationWindow]


def window_from_options(days: Optional[int] = None, minutes: Optional[int] = None) -> SyncWindow:
    """Build a window from CLI/API options. Minutes win when both are given."""
    if minutes:
        return ModificationWindow(minutes=minutes)
    return CreationWindow(days=days or 7)


# ─────────────────────────────────────────
# Pagination
# ─────────────────────────────────────────


@dataclass
class Page:
    """One upstream page. Page-number endpoints set total_pages, cursor endpoints next_cursor."""
    records: List[Dict[str, Any]]
    next_cursor: Optional[str] = None
    total_pages: Optional[int] = None


@dataclass
class FetchResult:
    """Everything a paginated fetch collected, plus why it stopped."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    error: Optional[str] = None
    rate_limited: bool = False
    capped: bool = False

    @property
    def complete(self) -> bool:
        """True when the walk ended naturally (no error, no 429, no page cap)."""
        return self.error is None and not self.rate_limited and not self.capped


class Paginator:
    """Lazy walk over a paginated endpoint, deduplicating records by id."""

    PAGE = "page"
    CURSOR = "cursor"

    def __init__(
        self,
        fetch_page: Callable[[Any], Awaitable[Page]],
        mode: str = PAGE,
        label: str = "records",
        id_key: str = "id",
        page_limit: Optional[int] = None,
        max_pages: Optional[int] = None,
    ):
        self.fetch_page = fetch_page
        self.mode = mode
        self.label = label
        self.id_key = id_key
        self.page_limit = page_limit
        self.max_pages = max_pages or settings.max_pages

        self.pages = 0
        self.error: Optional[str] = None
        self.rate_limited = False
        self.capped = False
        self._seen: set = set()

    def _is_new(self, record: Dict[str, Any]) -> bool:
        key = record.get(self.id_key) if isinstance(record, dict) else None
        if key is None:
            return True
        key = str(key)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._stream()

    async def _stream(self) -> AsyncIterator[Dict[str, Any]]:
        token: Any = 1 if self.mode == self.PAGE else None

        while True:
            if self.pages >= self.max_pages:
                self.capped = True
                log.warning(f"[Paginator] {self.label}: page cap {self.max_pages} reached, stopping")
                return

            try:
                page = await self.fetch_page(token)
            except RateLimitedError:
                self.rate_limited = True
                log.warning(f"[Paginator] {self.label}: rate limited on page {self.pages + 1}, stopping")
                return
            except APIError as e:
                self.error = f"{self.label} page {self.pages + 1}: {e}"
                log.error(f"[Paginator] {self.error}")
                return
            except Exception as e:
                self.error = f"{self.label} page {self.pages + 1}: {type(e).__name__}: {e}"
                log.error(f"[Paginator] {self.error}")
                return

            self.pages += 1
            new_records = [r for r in page.records if self._is_new(r)]
            for record in new_records:
                yield record

            if not page.records:
                return
            if not new_records:
                log.warning(
                    f"[Paginator] {self.label}: page {self.pages} returned only seen ids, stopping"
                )
                return

            if self.mode == self.PAGE:
                if page.total_pages:
                    if token >= page.total_pages:
                        return
                elif self.page_limit and len(page.records) < self.page_limit:
                    return
                token += 1
            else:
                if not page.next_cursor or page.next_cursor == token:
                    return
                token = page.next_cursor

    async def collect(self) -> FetchResult:
        """Drain the walk into a FetchResult."""
        records = [record async for record in self]
        return FetchResult(
            records=records,
            pages=self.pages,
            error=self.error,
            rate_limited=self.rate_limited,
            capped=self.capped,
        )
