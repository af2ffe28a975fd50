"""
ShipBob connector (API 2025-07).

Endpoints used:
  - GET  /order                  list orders in a window (Page/Limit, total-pages header)
  - GET  /order/{id}             point existence check for reconciliation
  - GET  /shipment/{id}          point fetch (status/tracking correction, reconciliation)
  - GET  /shipment/{id}/timeline milestone events
  - GET  /return                 returns (cursor)
  - GET  /receiving              warehouse receiving orders (Page/Limit)
  - GET  /product                catalog with variant inventory ids (cursor)
  - GET  /channel                channel -> application name
  - POST /transactions:query     billing transactions (cursor, parent token)

All calls on one token go through a shared RequestPacer. 429s raise
RateLimitedError (or come back as a 429 ApiResponse for point checks);
only transactions:query waits and retries, once.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import asyncio

import aiohttp

from shipsync.config import Settings, get_settings
from shipsync.connectors.base_connector import APIError, BaseConnector, RateLimitedError
from shipsync.connectors.pagination import Page, Paginator
from shipsync.utils.helpers import cursor_from_next, to_int
from shipsync.utils.logger import log
from shipsync.utils.rate_limit import RequestPacer, retry_after_seconds, retry_once_on_rate_limit

__all__ = ["ApiResponse", "APIError", "RateLimitedError", "ShipBobConnector"]


@dataclass
class ApiResponse:
    """Status, decoded JSON body and lower-cased headers of one call."""
    status: int
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


def _items(data: Any) -> List[Dict[str, Any]]:
    """List payloads come back either bare or wrapped in {items: [...]}."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get("items")
        if isinstance(items, list):
            return items
    return []


class ShipBobConnector(BaseConnector):
    """Async client for one ShipBob token."""

    def __init__(
        self,
        api_token: str,
        pacer: Optional[RequestPacer] = None,
        settings: Optional[Settings] = None,
        name: str = "ShipBob",
    ):
        super().__init__(name)
        self.settings = settings or get_settings()
        self.api_token = api_token
        self.base_url = self.settings.shipbob_api_base_url.rstrip("/")
        self.pacer = pacer or RequestPacer(self.settings.request_delay_seconds)
        self.rate_limit_wait = self.settings.rate_limit_wait_seconds
        self.headers = {
            "Authorization": f"Bearer {api_token}",
            "Accept": "application/json",
        }
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ShipBobConnector":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ─────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.settings.shipbob_request_timeout_seconds)
            self._session = aiohttp.ClientSession(headers=self.headers, timeout=timeout)
        return self._session

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> ApiResponse:
        """Single HTTP exchange. Network errors propagate to the caller."""
        session = await self._get_session()
        async with session.request(method, url, params=params, json=json_body) as response:
            data = None
            if response.status != 204:
                try:
                    data = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    data = None
            headers = {k.lower(): v for k, v in response.headers.items()}
            return ApiResponse(status=response.status, data=data, headers=headers)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> ApiResponse:
        """Paced request against the API base URL."""
        await self.pacer.wait()
        url = f"{self.base_url}/{path.lstrip('/')}"
        if params:
            params = {k: str(v) for k, v in params.items() if v is not None}
        response = await self._send(method, url, params=params or None, json_body=json_body)
        self.record_response(response.status)
        if response.status == 429:
            log.debug(f"{self.name} {method} {path} rate limited")
        return response

    def _raise_for_status(self, response: ApiResponse, context: str):
        if response.status == 429:
            raise RateLimitedError(
                f"{context}: rate limited",
                retry_after=retry_after_seconds(response.headers, self.rate_limit_wait),
            )
        if not response.ok:
            raise APIError(f"{context}: HTTP {response.status}", status=response.status)

    async def validate_connection(self) -> bool:
        """Check the token by listing channels."""
        try:
            response = await self.request("GET", "channel")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error(f"Failed to connect to ShipBob: {e}")
            return False
        if response.ok:
            return True
        if response.status in (401, 403):
            log.error(f"{self.name} authentication failed - check API token")
        else:
            log.warning(f"{self.name} connection check returned status {response.status}")
        return False

    # ─────────────────────────────────────────
    # Orders and shipments
    # ─────────────────────────────────────────

    def orders_paginator(self, window_params: Dict[str, str]) -> Paginator:
        """Orders in a sync window, page by page."""
        limit = self.settings.order_page_limit

        async def fetch(page_number: int) -> Page:
            params = {**window_params, "Limit": limit, "Page": page_number}
            response = await self.request("GET", "order", params=params)
            self._raise_for_status(response, f"orders page {page_number}")
            return Page(
                records=_items(response.data),
                total_pages=to_int(response.header("total-pages")),
            )

        return Paginator(fetch, mode=Paginator.PAGE, label=f"{self.name} orders", page_limit=limit)

    async def get_order(self, order_id: str) -> ApiResponse:
        return await self.request("GET", f"order/{order_id}")

    async def get_shipment(self, shipment_id: str) -> ApiResponse:
        return await self.request("GET", f"shipment/{shipment_id}")

    async def get_shipment_timeline(self, shipment_id: str) -> List[Dict[str, Any]]:
        """
        Timeline events for a shipment.

        404 means no events yet (shipment still processing) and returns [].
        429 raises RateLimitedError, anything else non-2xx raises APIError.
        """
        response = await self.request("GET", f"shipment/{shipment_id}/timeline")
        if response.status == 404:
            return []
        self._raise_for_status(response, f"timeline {shipment_id}")
        return _items(response.data)

    # ─────────────────────────────────────────
    # Lookup sources
    # ─────────────────────────────────────────

    def _cursor_paginator(self, path: str, label: str) -> Paginator:
        async def fetch(cursor: Optional[str]) -> Page:
            params = {"Cursor": cursor} if cursor else None
            response = await self.request("GET", path, params=params)
            self._raise_for_status(response, label)
            data = response.data if isinstance(response.data, dict) else {}
            return Page(records=_items(response.data), next_cursor=cursor_from_next(data.get("next")))

        return Paginator(fetch, mode=Paginator.CURSOR, label=f"{self.name} {label}")

    def returns_paginator(self) -> Paginator:
        return self._cursor_paginator("return", "returns")

    def products_paginator(self) -> Paginator:
        return self._cursor_paginator("product", "products")

    def receiving_paginator(self) -> Paginator:
        limit = self.settings.order_page_limit

        async def fetch(page_number: int) -> Page:
            response = await self.request("GET", "receiving", params={"Limit": limit, "Page": page_number})
            self._raise_for_status(response, f"receiving page {page_number}")
            return Page(
                records=_items(response.data),
                total_pages=to_int(response.header("total-pages")),
            )

        return Paginator(fetch, mode=Paginator.PAGE, label=f"{self.name} receiving", page_limit=limit)

    async def list_channels(self) -> List[Dict[str, Any]]:
        response = await self.request("GET", "channel")
        self._raise_for_status(response, "channels")
        return _items(response.data)

    # ─────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────

    def transactions_paginator(self, body: Dict[str, Any], label: str = "transactions") -> Paginator:
        """
        POST /transactions:query, following `next` cursors.

        body is either {"reference_ids": [...], "page_size": n} or
        {"from_date": ..., "to_date": ..., "page_size": n}.
        """

        async def fetch(cursor: Optional[str]) -> Page:
            params = {"Cursor": cursor} if cursor else None
            response = await retry_once_on_rate_limit(
                lambda: self.request("POST", "transactions:query", params=params, json_body=body),
                default_wait=self.rate_limit_wait,
                label=f"{self.name} {label}",
                stats=self.rate_limit_stats,
            )
            self._raise_for_status(response, label)
            data = response.data if isinstance(response.data, dict) else {}
            return Page(records=_items(response.data), next_cursor=cursor_from_next(data.get("next")))

        return Paginator(
            fetch, mode=Paginator.CURSOR, label=f"{self.name} {label}", id_key="transaction_id"
        )
