"""
Entity Upserter

Maps raw order payloads from GET /order into orders, shipments, order
items, shipment items and cartons, and writes them in fixed-size batches.

Order:    upsert on (client_id, shipbob_order_id)
Shipment: upsert on shipment_id
Order item: upsert on (order_id, shipbob_product_id)
Shipment items / cartons: replaced by shipment_id (delete and insert in one transaction)

Every order/shipment upsert clears deleted_at and refreshes
last_verified_at, which is how a soft-deleted row comes back when the
provider lists it again.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from shipsync.config import Settings, get_settings
from shipsync.models.fulfillment import Order, OrderItem, Shipment, ShipmentCarton, ShipmentItem
from shipsync.services.billable_weight import compute_billable_weight, normalize_country
from shipsync.services.tenant_service import TenantContext
from shipsync.store import Store
from shipsync.utils.helpers import parse_datetime, to_float, to_int, to_str, utcnow
from shipsync.utils.logger import log


@dataclass
class EntityCounts:
    found: int = 0
    upserted: int = 0
    restored: int = 0

    def to_dict(self) -> dict:
        return {"found": self.found, "upserted": self.upserted, "restored": self.restored}


@dataclass
class UpsertResult:
    """Per-entity counts plus the ids later stages need."""
    orders: EntityCounts = field(default_factory=EntityCounts)
    shipments: EntityCounts = field(default_factory=EntityCounts)
    order_items: int = 0
    shipment_items: int = 0
    shipment_items_synthesized: int = 0
    cartons: int = 0
    errors: List[str] = field(default_factory=list)

    order_ids: List[str] = field(default_factory=list)  # Provider order ids seen
    shipment_ids: List[str] = field(default_factory=list)  # Provider shipment ids upserted
    order_id_map: Dict[str, int] = field(default_factory=dict)  # Provider order id -> orders.id

    def to_dict(self) -> dict:
        return {
            "orders": self.orders.to_dict(),
            "shipments": self.shipments.to_dict(),
            "order_items": self.order_items,
            "shipment_items": self.shipment_items,
            "shipment_items_synthesized": self.shipment_items_synthesized,
            "cartons": self.cartons,
            "errors": self.errors,
        }


@dataclass
class MappingLookups:
    """Reference data used while mapping (channel names, FC countries)."""
    channels: Dict[int, str] = field(default_factory=dict)  # channel_id -> application_name
    fulfillment_centers: Dict[str, str] = field(default_factory=dict)  # FC name / first word -> country

    def fc_country(self, fc_name: Optional[str]) -> Optional[str]:
        if not fc_name:
            return None
        country = self.fulfillment_centers.get(fc_name)
        if country is None:
            country = self.fulfillment_centers.get(fc_name.split(" ")[0])
        return country


def _dig(data: Any, *path: str) -> Any:
    """Nested .get() that tolerates missing or non-dict levels."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class EntityUpserter:
    """Maps and writes order listings for one tenant."""

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    # ─────────────────────────────────────────
    # Mapping
    # ─────────────────────────────────────────

    def map_order(self, tenant: TenantContext, order: Dict, lookups: MappingLookups, now: datetime) -> Dict:
        channel_id = to_int(_dig(order, "channel", "id"))
        return {
            "client_id": tenant.id,
            "merchant_id": tenant.merchant_id,
            "shipbob_order_id": to_str(order.get("id")),
            "store_order_id": to_str(order.get("order_number")),
            "reference_id": to_str(order.get("reference_id")),
            "customer_name": _dig(order, "recipient", "name"),
            "customer_email": _dig(order, "recipient", "email"),
            "city": _dig(order, "recipient", "address", "city"),
            "state": _dig(order, "recipient", "address", "state"),
            "zip_code": _dig(order, "recipient", "address", "zip_code"),
            "country": _dig(order, "recipient", "address", "country"),
            "status": order.get("status"),
            "order_type": order.get("type"),
            "shipping_method": order.get("shipping_method"),
            "channel_id": channel_id,
            "channel_name": _dig(order, "channel", "name"),
            "application_name": lookups.channels.get(channel_id) if channel_id else None,
            "total_price": to_float(_dig(order, "financials", "total_price")),
            "total_shipments": len(order.get("shipments") or []),
            "tags": order.get("tags") or None,
            "order_import_date": parse_datetime(order.get("created_date")),
            "purchase_date": parse_datetime(order.get("purchase_date")),
            "last_verified_at": now,
            "deleted_at": None,
        }

    def map_shipment(
        self,
        tenant: TenantContext,
        order: Dict,
        shipment: Dict,
        order_db_id: int,
        lookups: MappingLookups,
        now: datetime,
    ) -> Dict:
        measurements = shipment.get("measurements") or {}
        length = to_float(measurements.get("length_in"))
        width = to_float(measurements.get("width_in"))
        height = to_float(measurements.get("depth_in"))
        actual = to_float(measurements.get("total_weight_oz"))

        fc_name = _dig(shipment, "location", "name")
        origin = normalize_country(lookups.fc_country(fc_name))
        destination = normalize_country(_dig(order, "recipient", "address", "country"))
        weight = compute_billable_weight(length, width, height, actual, origin, destination)

        channel_id = to_int(_dig(order, "channel", "id"))
        status_details = shipment.get("status_details")
        return {
            "client_id": tenant.id,
            "merchant_id": tenant.merchant_id,
            "order_id": order_db_id,
            "shipment_id": to_str(shipment.get("id")),
            "shipbob_order_id": to_str(order.get("id")),
            "tracking_id": _dig(shipment, "tracking", "tracking_number"),
            "tracking_url": _dig(shipment, "tracking", "tracking_url"),
            "carrier": _dig(shipment, "tracking", "carrier"),
            "carrier_service": shipment.get("ship_option"),
            "status": shipment.get("status"),
            "status_details": status_details if status_details else None,
            "fc_name": fc_name,
            "origin_country": origin,
            "destination_country": destination,
            "zone_used": to_int(_dig(shipment, "zone", "id")),
            "application_name": lookups.channels.get(channel_id) if channel_id else None,
            "length_in": length,
            "width_in": width,
            "height_in": height,
            "actual_weight_oz": actual,
            "dim_weight_oz": weight.dim_weight_oz,
            "billable_weight_oz": weight.billable_weight_oz,
            "created_date": parse_datetime(shipment.get("created_date")),
            "delivered_date": parse_datetime(shipment.get("delivery_date")),
            "last_update_at": parse_datetime(shipment.get("last_update_at")),
            "last_verified_at": now,
            "deleted_at": None,
        }

    @staticmethod
    def map_order_item(tenant: TenantContext, order_db_id: int, product: Dict) -> Optional[Dict]:
        product_id = to_int(product.get("id"))
        if product_id is None:
            return None
        return {
            "client_id": tenant.id,
            "merchant_id": tenant.merchant_id,
            "order_id": order_db_id,
            "shipbob_product_id": product_id,
            "sku": product.get("sku"),
            "reference_id": to_str(product.get("reference_id")),
            "name": product.get("name"),
            "quantity": to_int(product.get("quantity")),
            "unit_price": to_float(product.get("unit_price")),
            "gtin": to_str(product.get("gtin")),
            "upc": to_str(product.get("upc")),
            "external_line_id": to_int(product.get("external_line_id")),
        }

    @staticmethod
    def map_shipment_items(tenant: TenantContext, order: Dict, shipment: Dict) -> List[Dict]:
        """
        Shipment items, one row per inventory allocation.

        The listing puts quantities on order.products and names on
        shipment.products, so quantities are joined from the order by
        product id, then by SKU. A shipment with no products at all gets
        its items synthesized from the order's products.
        """
        shipment_id = to_str(shipment.get("id"))
        order_products = order.get("products") or []
        qty_by_id: Dict[int, int] = {}
        qty_by_sku: Dict[str, int] = {}
        for p in order_products:
            qty = to_int(p.get("quantity"))
            if qty is None:
                continue
            if to_int(p.get("id")) is not None:
                qty_by_id.setdefault(to_int(p.get("id")), qty)
            if p.get("sku"):
                qty_by_sku.setdefault(p["sku"], qty)

        items: List[Dict] = []
        shipment_products = shipment.get("products") or []
        if not shipment_products:
            for p in order_products:
                items.append({
                    "client_id": tenant.id,
                    "merchant_id": tenant.merchant_id,
                    "shipment_id": shipment_id,
                    "shipbob_product_id": to_int(p.get("id")),
                    "sku": p.get("sku"),
                    "reference_id": to_str(p.get("reference_id")),
                    "name": p.get("name"),
                    "quantity": to_int(p.get("quantity")),
                    "is_dangerous_goods": False,
                    "synthesized": True,
                })
            return items

        for product in shipment_products:
            product_id = to_int(product.get("id"))
            order_qty = qty_by_id.get(product_id) if product_id is not None else None
            if order_qty is None and product.get("sku"):
                order_qty = qty_by_sku.get(product["sku"])
            for inv in (product.get("inventory") or [{}]):
                inv = inv or {}
                items.append({
                    "client_id": tenant.id,
                    "merchant_id": tenant.merchant_id,
                    "shipment_id": shipment_id,
                    "shipbob_product_id": product_id,
                    "sku": product.get("sku"),
                    "reference_id": to_str(product.get("reference_id")),
                    "name": product.get("name"),
                    "inventory_id": to_int(inv.get("id")),
                    "lot": inv.get("lot"),
                    "expiration_date": parse_datetime(inv.get("expiration_date")),
                    "quantity": to_int(inv.get("quantity")) or order_qty or to_int(product.get("quantity")),
                    "serial_numbers": inv.get("serial_numbers") or None,
                    "is_dangerous_goods": bool(product.get("is_dangerous_goods")),
                    "synthesized": False,
                })
        return items

    @staticmethod
    def map_cartons(tenant: TenantContext, shipment: Dict) -> List[Dict]:
        cartons = []
        for carton in shipment.get("parent_cartons") or []:
            measurements = carton.get("measurements") or {}
            cartons.append({
                "client_id": tenant.id,
                "merchant_id": tenant.merchant_id,
                "shipment_id": to_str(shipment.get("id")),
                "carton_id": to_int(carton.get("id")),
                "barcode": carton.get("barcode"),
                "carton_type": carton.get("type"),
                "parent_barcode": carton.get("parent_carton_barcode"),
                "length_in": to_float(measurements.get("length_in")),
                "width_in": to_float(measurements.get("width_in")),
                "depth_in": to_float(measurements.get("depth_in")),
                "weight_oz": to_float(measurements.get("weight_oz")),
                "contents": carton.get("products") or None,
            })
        return cartons

    # ─────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────

    def upsert_orders(
        self,
        tenant: TenantContext,
        api_orders: List[Dict],
        lookups: Optional[MappingLookups] = None,
        now: Optional[datetime] = None,
    ) -> UpsertResult:
        """Write one tenant's order listing. Never raises for batch failures."""
        lookups = lookups or MappingLookups()
        now = now or utcnow()
        result = UpsertResult()

        orders_by_id: Dict[str, Dict] = {}
        for order in api_orders:
            order_id = to_str(order.get("id")) if isinstance(order, dict) else None
            if order_id is None:
                log.warning(f"[Upsert] {tenant.name}: skipping order without id")
                continue
            orders_by_id[order_id] = order
        result.orders.found = len(orders_by_id)
        result.order_ids = list(orders_by_id)
        if not orders_by_id:
            return result

        # Orders
        restored = self.store.select_in(
            Order, Order.shipbob_order_id, result.order_ids,
            Order.client_id == tenant.id, Order.deleted_at.isnot(None),
            columns=[Order.id],
        )
        order_records = [self.map_order(tenant, o, lookups, now) for o in orders_by_id.values()]
        written = self.store.batch_upsert(Order, order_records, ["client_id", "shipbob_order_id"])
        result.orders.upserted = written.success
        result.errors.extend(written.errors)
        if written.success:
            result.orders.restored = len(restored)

        rows = self.store.select_in(
            Order, Order.shipbob_order_id, result.order_ids,
            Order.client_id == tenant.id,
            columns=[Order.id, Order.shipbob_order_id],
        )
        result.order_id_map = {row["shipbob_order_id"]: row["id"] for row in rows}

        # Shipments
        shipment_records: List[Dict] = []
        shipment_pairs = []  # (order, shipment) kept for items and cartons
        for order_id, order in orders_by_id.items():
            order_db_id = result.order_id_map.get(order_id)
            if order_db_id is None:
                continue
            for shipment in order.get("shipments") or []:
                if not isinstance(shipment, dict) or shipment.get("id") is None:
                    continue
                shipment_records.append(self.map_shipment(tenant, order, shipment, order_db_id, lookups, now))
                shipment_pairs.append((order, shipment))

        result.shipments.found = len(shipment_records)
        shipment_ids = [r["shipment_id"] for r in shipment_records]
        if shipment_records:
            restored = self.store.select_in(
                Shipment, Shipment.shipment_id, shipment_ids,
                Shipment.deleted_at.isnot(None),
                columns=[Shipment.id],
            )
            written = self.store.batch_upsert(Shipment, shipment_records, ["shipment_id"])
            result.shipments.upserted = written.success
            result.errors.extend(written.errors)
            if written.success:
                result.shipments.restored = len(restored)
                result.shipment_ids = shipment_ids

        # Order items
        item_records = []
        for order_id, order in orders_by_id.items():
            order_db_id = result.order_id_map.get(order_id)
            if order_db_id is None:
                continue
            for product in order.get("products") or []:
                record = self.map_order_item(tenant, order_db_id, product or {})
                if record:
                    item_records.append(record)
        written = self.store.batch_upsert(OrderItem, item_records, ["order_id", "shipbob_product_id"])
        result.order_items = written.success
        result.errors.extend(written.errors)

        # Shipment items and cartons are replaced per shipment
        if result.shipment_ids:
            shipment_items = []
            for order, shipment in shipment_pairs:
                shipment_items.extend(self.map_shipment_items(tenant, order, shipment))
            written = self.store.replace_rows(ShipmentItem, "shipment_id", result.shipment_ids, shipment_items)
            result.shipment_items = written.success
            result.shipment_items_synthesized = sum(1 for i in shipment_items if i["synthesized"])
            result.errors.extend(written.errors)

            cartons = []
            for _, shipment in shipment_pairs:
                cartons.extend(self.map_cartons(tenant, shipment))
            written = self.store.replace_rows(ShipmentCarton, "shipment_id", result.shipment_ids, cartons)
            result.cartons = written.success
            result.errors.extend(written.errors)

        log.info(
            f"[Upsert] {tenant.name}: {result.orders.upserted}/{result.orders.found} orders "
            f"({result.orders.restored} restored), {result.shipments.upserted}/{result.shipments.found} shipments "
            f"({result.shipments.restored} restored), {result.order_items} order items, "
            f"{result.shipment_items} shipment items, {result.cartons} cartons"
        )
        return result
