"""
Attribution lookup indexes

Key -> tenant maps the attribution strategies consult. They are built once
per run from the store and passed to the attributor, so tests can hand in
partial or synthetic indexes instead.

A key that maps to more than one tenant (store order numbers are only
unique per storefront, for example) is treated as unknown rather than
resolved to whichever tenant was loaded last.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

from shipsync.models.billing import Product, ReceivingOrder, Return
from shipsync.models.fulfillment import Order, Shipment
from shipsync.models.tenant import Tenant
from shipsync.store import Store
from shipsync.utils.logger import log


class LookupIndex:
    """String key -> tenant id, with ambiguous keys resolving to None."""

    def __init__(self, name: str):
        self.name = name
        self._map: Dict[str, int] = {}
        self._ambiguous: set = set()

    @classmethod
    def from_pairs(cls, name: str, pairs: Iterable[Tuple[Any, Optional[int]]]) -> "LookupIndex":
        index = cls(name)
        for key, tenant_id in pairs:
            index.add(key, tenant_id)
        return index

    def add(self, key: Any, tenant_id: Optional[int]):
        if key is None or key == "" or tenant_id is None:
            return
        key = str(key)
        if key in self._ambiguous:
            return
        existing = self._map.get(key)
        if existing is None:
            self._map[key] = tenant_id
        elif existing != tenant_id:
            del self._map[key]
            self._ambiguous.add(key)

    def get(self, key: Any) -> Optional[int]:
        if key is None:
            return None
        return self._map.get(str(key))

    @property
    def ambiguous_count(self) -> int:
        return len(self._ambiguous)

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, key: Any) -> bool:
        return key is not None and str(key) in self._map


@dataclass
class AttributionIndexes:
    """Everything the attribution cascade can look up."""
    shipments: LookupIndex = field(default_factory=lambda: LookupIndex("shipments"))
    returns: LookupIndex = field(default_factory=lambda: LookupIndex("returns"))
    inventory: LookupIndex = field(default_factory=lambda: LookupIndex("inventory"))
    receiving: LookupIndex = field(default_factory=lambda: LookupIndex("receiving"))
    orders: LookupIndex = field(default_factory=lambda: LookupIndex("orders"))

    tenant_names: Dict[int, str] = field(default_factory=dict)  # Non-system tenants
    system_tenants: Dict[str, int] = field(default_factory=dict)  # Display name -> id
    merchant_ids: Dict[int, Optional[str]] = field(default_factory=dict)

    def summary(self) -> Dict[str, int]:
        return {
            "shipments": len(self.shipments),
            "returns": len(self.returns),
            "inventory": len(self.inventory),
            "receiving": len(self.receiving),
            "orders": len(self.orders),
            "tenants": len(self.tenant_names),
            "system_tenants": len(self.system_tenants),
        }


def inventory_ids_from_variants(variants: Any) -> Iterable[Any]:
    """inventory.inventory_id of each catalog variant."""
    if not isinstance(variants, list):
        return []
    ids = []
    for variant in variants:
        inventory = variant.get("inventory") if isinstance(variant, dict) else None
        if isinstance(inventory, dict) and inventory.get("inventory_id"):
            ids.append(inventory["inventory_id"])
        elif isinstance(inventory, list):
            ids.extend(i.get("inventory_id") for i in inventory if isinstance(i, dict) and i.get("inventory_id"))
    return ids


class AttributionIndexBuilder:
    """Builds AttributionIndexes by keyset-paging the store."""

    def __init__(self, store: Store):
        self.store = store

    def build(self) -> AttributionIndexes:
        indexes = AttributionIndexes()

        for row in self.store.iter_rows(Tenant, columns=[Tenant.name, Tenant.merchant_id, Tenant.is_system]):
            indexes.merchant_ids[row["id"]] = row.get("merchant_id")
            if row.get("is_system"):
                indexes.system_tenants[row["name"]] = row["id"]
            else:
                indexes.tenant_names[row["id"]] = row["name"]

        for row in self.store.iter_rows(Shipment, columns=[Shipment.shipment_id, Shipment.client_id]):
            indexes.shipments.add(row["shipment_id"], row["client_id"])

        for row in self.store.iter_rows(Return, columns=[Return.shipbob_return_id, Return.client_id]):
            indexes.returns.add(row["shipbob_return_id"], row["client_id"])

        for row in self.store.iter_rows(Product, columns=[Product.client_id, Product.variants]):
            for inventory_id in inventory_ids_from_variants(row.get("variants")):
                indexes.inventory.add(inventory_id, row["client_id"])

        for row in self.store.iter_rows(ReceivingOrder, columns=[ReceivingOrder.shipbob_receiving_id, ReceivingOrder.client_id]):
            indexes.receiving.add(row["shipbob_receiving_id"], row["client_id"])

        for row in self.store.iter_rows(Order, columns=[Order.store_order_id, Order.shipbob_order_id, Order.client_id]):
            indexes.orders.add(row["shipbob_order_id"], row["client_id"])
            indexes.orders.add(row["store_order_id"], row["client_id"])

        log.info(f"[Attribution] Built indexes: {indexes.summary()}")
        return indexes
