"""
Catalog and lookup-source syncs

Returns, receiving orders and products are only needed as attribution
sources, so they are refreshed on full syncs. Channels and fulfillment
centers feed order/shipment mapping.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from shipsync.config import Settings, get_settings
from shipsync.models.billing import FulfillmentCenter, Product, ReceivingOrder, Return
from shipsync.services.tenant_service import TenantContext
from shipsync.store import Store
from shipsync.utils.helpers import parse_datetime, to_int, to_str, utcnow
from shipsync.utils.logger import log


@dataclass
class CatalogResult:
    found: int = 0
    upserted: int = 0
    rate_limited: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"found": self.found, "upserted": self.upserted, "rate_limited": self.rate_limited, "errors": self.errors}


def _name(data, key: str) -> Optional[str]:
    value = data.get(key)
    return value.get("name") if isinstance(value, dict) else None


class CatalogSyncService:
    """Per-tenant sync of attribution lookup sources."""

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    # ─────────────────────────────────────────
    # Mapping
    # ─────────────────────────────────────────

    @staticmethod
    def map_return(tenant: TenantContext, data: Dict, now: datetime) -> Dict:
        return {
            "client_id": tenant.id,
            "merchant_id": tenant.merchant_id,
            "shipbob_return_id": to_str(data.get("id")),
            "reference_id": to_str(data.get("reference_id")),
            "store_order_id": to_str(data.get("store_order_id")),
            "original_shipment_id": to_str(data.get("original_shipment_id")),
            "status": data.get("status"),
            "return_type": data.get("return_type"),
            "tracking_number": data.get("tracking_number"),
            "fc_name": _name(data, "fulfillment_center"),
            "insert_date": parse_datetime(data.get("insert_date")),
            "completed_date": parse_datetime(data.get("completed_date")),
            "synced_at": now,
        }

    @staticmethod
    def map_receiving_order(tenant: TenantContext, data: Dict, now: datetime) -> Dict:
        return {
            "client_id": tenant.id,
            "merchant_id": tenant.merchant_id,
            "shipbob_receiving_id": to_str(data.get("id")),
            "purchase_order_number": to_str(data.get("purchase_order_number")),
            "status": data.get("status"),
            "package_type": data.get("package_type"),
            "fc_name": _name(data, "fulfillment_center"),
            "expected_arrival_date": parse_datetime(data.get("expected_arrival_date")),
            "insert_date": parse_datetime(data.get("insert_date")),
            "synced_at": now,
        }

    @staticmethod
    def map_product(tenant: TenantContext, data: Dict, now: datetime) -> Dict:
        return {
            "client_id": tenant.id,
            "merchant_id": tenant.merchant_id,
            "shipbob_product_id": to_str(data.get("id")),
            "name": data.get("name"),
            "product_type": data.get("type"),
            "variants": data.get("variants") or None,
            "synced_at": now,
        }

    # ─────────────────────────────────────────
    # Syncs
    # ─────────────────────────────────────────

    async def _sync(self, tenant, paginator, mapper, model, conflict_cols, label, now) -> CatalogResult:
        result = CatalogResult()
        fetch = await paginator.collect()
        result.found = len(fetch.records)
        result.rate_limited = fetch.rate_limited
        if fetch.error:
            result.errors.append(fetch.error)

        records = [mapper(tenant, r, now) for r in fetch.records if isinstance(r, dict) and r.get("id") is not None]
        written = self.store.batch_upsert(model, records, conflict_cols, preserve_non_null=("client_id",))
        result.upserted = written.success
        result.errors.extend(written.errors)
        log.info(f"[Catalog] {tenant.name}: {result.upserted}/{result.found} {label}")
        return result

    async def sync_returns(self, tenant: TenantContext, connector, now: Optional[datetime] = None) -> CatalogResult:
        return await self._sync(
            tenant, connector.returns_paginator(), self.map_return,
            Return, ["shipbob_return_id"], "returns", now or utcnow(),
        )

    async def sync_receiving_orders(self, tenant: TenantContext, connector, now: Optional[datetime] = None) -> CatalogResult:
        return await self._sync(
            tenant, connector.receiving_paginator(), self.map_receiving_order,
            ReceivingOrder, ["shipbob_receiving_id"], "receiving orders", now or utcnow(),
        )

    async def sync_products(self, tenant: TenantContext, connector, now: Optional[datetime] = None) -> CatalogResult:
        return await self._sync(
            tenant, connector.products_paginator(), self.map_product,
            Product, ["client_id", "shipbob_product_id"], "products", now or utcnow(),
        )

    # ─────────────────────────────────────────
    # Mapping lookups
    # ─────────────────────────────────────────

    async def load_channel_lookup(self, tenant: TenantContext, connector) -> Dict[int, str]:
        """channel_id -> application_name. Failures only cost the application name."""
        try:
            channels = await connector.list_channels()
        except Exception as e:
            log.warning(f"[Catalog] {tenant.name}: could not fetch channels: {e}")
            return {}
        lookup = {}
        for channel in channels:
            channel_id = to_int(channel.get("id")) if isinstance(channel, dict) else None
            if channel_id is not None and channel.get("application_name"):
                lookup[channel_id] = channel["application_name"]
        return lookup

    def load_fc_lookup(self) -> Dict[str, str]:
        """Fulfillment center name -> country, also keyed by the name's first word."""
        lookup: Dict[str, str] = {}
        for row in self.store.select(FulfillmentCenter, columns=[FulfillmentCenter.name, FulfillmentCenter.country]):
            if not row["name"] or not row["country"]:
                continue
            lookup[row["name"]] = row["country"]
            lookup.setdefault(row["name"].split(" ")[0], row["country"])
        return lookup
