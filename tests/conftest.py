"""
Test Suite Configuration

In-memory SQLite store, a ShipBob connector whose transport is a routing
table, and payload builders shaped like the 2025-07 API.
"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from shipsync.config import Settings
from shipsync.connectors.shipbob_connector import ApiResponse, ShipBobConnector
from shipsync.models.base import init_db
from shipsync.models.tenant import Tenant
from shipsync.services.tenant_service import TenantContext
from shipsync.store import Store
from shipsync.utils.rate_limit import RequestPacer

NOW = datetime(2026, 3, 10, 12, 0, 0)


def ok(data: Any = None, **headers) -> ApiResponse:
    return ApiResponse(status=200, data=data, headers={k.replace("_", "-").lower(): str(v) for k, v in headers.items()})


def status(code: int, data: Any = None) -> ApiResponse:
    return ApiResponse(status=code, data=data)


class FakeShipBob(ShipBobConnector):
    """
    Connector with the HTTP exchange replaced by `routes`.

    Keys are "METHOD path" (e.g. "GET order/1001"); values are an
    ApiResponse, an exception to raise, or a callable(params, body)
    returning either. Unrouted paths answer 404.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None, token: str = "tenant-token",
                 settings: Optional[Settings] = None, pacer: Optional[RequestPacer] = None, name: str = "ShipBob test"):
        super().__init__(token, pacer=pacer or RequestPacer(0), settings=settings, name=name)
        self.routes = routes if routes is not None else {}
        self.calls = []
        self.closed = False

    async def _send(self, method, url, params=None, json_body=None):
        path = url[len(self.base_url) + 1:]
        self.calls.append((method, path, params, json_body))
        handler = self.routes.get(f"{method} {path}")
        if handler is None:
            return ApiResponse(status=404)
        if callable(handler) and not isinstance(handler, ApiResponse):
            handler = handler(params, json_body)
        if isinstance(handler, Exception):
            raise handler
        return handler

    async def close(self):
        self.closed = True
        await super().close()

    def paths(self, method: Optional[str] = None):
        return [path for m, path, _, _ in self.calls if method is None or m == method]


# ─────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="testing",
        request_delay_seconds=0,
        rate_limit_wait_seconds=0,
        shipbob_parent_api_token="parent-token",
        batch_size=50,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> Store:
    return Store(engine=engine, batch_size=50)


@pytest.fixture
def make_tenant(store) -> Callable[..., TenantContext]:
    """Insert a tenant row and return its context."""

    def _make(name: str, token: Optional[str] = "tenant-token", is_system: bool = False,
              merchant_id: Optional[str] = None, sync_interval_minutes: Optional[int] = None) -> TenantContext:
        store.batch_upsert(Tenant, [{
            "name": name,
            "merchant_id": merchant_id,
            "api_token": token,
            "is_active": True,
            "is_system": is_system,
            "sync_interval_minutes": sync_interval_minutes,
        }], ["name"])
        row = store.select(Tenant, Tenant.name == name)[0]
        return TenantContext(
            id=row["id"],
            name=row["name"],
            merchant_id=row["merchant_id"],
            api_token=row["api_token"],
            sync_interval_minutes=row["sync_interval_minutes"],
            is_system=row["is_system"],
        )

    return _make


@pytest.fixture
def fake_shipbob(test_settings) -> Callable[..., FakeShipBob]:
    def _make(routes=None, token="tenant-token", pacer=None, name="ShipBob test") -> FakeShipBob:
        return FakeShipBob(routes, token=token, settings=test_settings, pacer=pacer, name=name)

    return _make


def api_shipment(shipment_id: int, created: str = "2026-03-09T10:00:00Z", products=None, **extra) -> Dict:
    shipment = {
        "id": shipment_id,
        "status": "Completed",
        "created_date": created,
        "location": {"id": 10, "name": "Ontario (CA)"},
        "tracking": {"tracking_number": f"TRK{shipment_id}", "carrier": "USPS"},
        "measurements": {"length_in": 10, "width_in": 10, "depth_in": 10, "total_weight_oz": 20},
        "products": products if products is not None else [],
    }
    shipment.update(extra)
    return shipment


def api_order(order_id: int, shipments=None, products=None, created: str = "2026-03-09T09:00:00Z", **extra) -> Dict:
    order = {
        "id": order_id,
        "order_number": f"#{order_id}",
        "created_date": created,
        "status": "Fulfilled",
        "type": "DTC",
        "channel": {"id": 7, "name": "store.example.com"},
        "recipient": {"name": "Jo Smith", "address": {"city": "Austin", "country": "US"}},
        "products": products if products is not None else [],
        "shipments": shipments if shipments is not None else [],
    }
    order.update(extra)
    return order

