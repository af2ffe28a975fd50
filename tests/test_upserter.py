"""
Entity upserter tests.

Guards against:
1. Duplicate rows on re-sync (natural-key upsert)
2. Soft-deleted rows staying deleted after they reappear upstream
3. Shipment items losing quantities that only the order carries
"""
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from shipsync.models.fulfillment import Order, OrderItem, Shipment, ShipmentCarton, ShipmentItem
from shipsync.services.entity_upserter import EntityUpserter, MappingLookups
from shipsync.store import Store

from conftest import NOW, api_order, api_shipment


def _fail_inserts(engine, table, on_calls):
    """Make the Nth, Mth... INSERT into `table` fail with a store error."""
    calls = []

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith(f"INSERT INTO {table} "):
            calls.append(statement)
            if len(calls) in on_calls:
                raise OperationalError(statement, parameters, Exception("disk I/O error"))

    event.listen(engine, "before_cursor_execute", before_cursor_execute)
    return calls


def _order_with_items():
    return api_order(
        1001,
        products=[
            {"id": 501, "sku": "MUG-RED", "name": "Red mug", "quantity": 3},
            {"id": 502, "sku": "MUG-BLUE", "name": "Blue mug", "quantity": 2},
        ],
        shipments=[
            api_shipment(9001, products=[
                {"id": 501, "sku": "MUG-RED", "name": "Red mug",
                 "inventory": [{"id": 77, "lot": "L1"}]},
                {"id": None, "sku": "MUG-BLUE", "name": "Blue mug"},
            ]),
        ],
    )


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------

def test_upsert_twice_yields_identical_rows(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    upserter = EntityUpserter(store, test_settings)
    payload = [_order_with_items()]

    first = upserter.upsert_orders(tenant, payload, now=NOW)
    second = upserter.upsert_orders(tenant, payload, now=NOW)

    assert first.errors == [] and second.errors == []
    assert first.orders.upserted == second.orders.upserted == 1
    assert len(store.select(Order)) == 1
    assert len(store.select(Shipment)) == 1
    assert len(store.select(OrderItem)) == 2
    assert len(store.select(ShipmentItem)) == 2
    assert first.order_id_map == second.order_id_map


def test_order_fields_are_mapped(store, test_settings, make_tenant):
    tenant = make_tenant("Acme", merchant_id="m-1")
    lookups = MappingLookups(channels={7: "Shopify"})
    EntityUpserter(store, test_settings).upsert_orders(tenant, [_order_with_items()], lookups=lookups, now=NOW)

    order = store.select(Order)[0]
    assert order["client_id"] == tenant.id
    assert order["merchant_id"] == "m-1"
    assert order["shipbob_order_id"] == "1001"
    assert order["store_order_id"] == "#1001"
    assert order["application_name"] == "Shopify"
    assert order["total_shipments"] == 1
    assert order["last_verified_at"] == NOW

    shipment = store.select(Shipment)[0]
    assert shipment["order_id"] == order["id"]
    assert shipment["tracking_id"] == "TRK9001"
    assert shipment["dim_weight_oz"] == 96
    assert shipment["billable_weight_oz"] == 96


def test_same_provider_order_id_in_two_tenants(store, test_settings, make_tenant):
    a, b = make_tenant("Acme"), make_tenant("Bolt")
    upserter = EntityUpserter(store, test_settings)
    upserter.upsert_orders(a, [api_order(1001)], now=NOW)
    upserter.upsert_orders(b, [api_order(1001)], now=NOW)
    assert sorted(r["client_id"] for r in store.select(Order)) == sorted([a.id, b.id])


# ---------------------------------------------------------------------------
# Restoration
# ---------------------------------------------------------------------------

def test_reappearing_rows_are_restored_by_plain_upsert(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    upserter = EntityUpserter(store, test_settings)
    payload = [api_order(1001, shipments=[api_shipment(9001)])]
    upserter.upsert_orders(tenant, payload, now=NOW)

    store.update_where(Order, {"deleted_at": NOW}, Order.shipbob_order_id == "1001")
    store.update_where(Shipment, {"deleted_at": NOW}, Shipment.shipment_id == "9001")

    result = upserter.upsert_orders(tenant, payload, now=NOW)
    assert result.orders.restored == 1
    assert result.shipments.restored == 1
    assert store.select(Order)[0]["deleted_at"] is None
    assert store.select(Shipment)[0]["deleted_at"] is None


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

def test_shipment_item_quantity_joined_from_order(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    EntityUpserter(store, test_settings).upsert_orders(tenant, [_order_with_items()], now=NOW)

    items = {r["sku"]: r for r in store.select(ShipmentItem)}
    assert items["MUG-RED"]["quantity"] == 3  # by product id
    assert items["MUG-RED"]["inventory_id"] == 77
    assert items["MUG-RED"]["lot"] == "L1"
    assert items["MUG-BLUE"]["quantity"] == 2  # by SKU
    assert not any(r["synthesized"] for r in items.values())


def test_inventory_quantity_wins_over_order_quantity(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    order = api_order(
        1002,
        products=[{"id": 501, "sku": "MUG-RED", "quantity": 5}],
        shipments=[
            api_shipment(9002, products=[{"id": 501, "sku": "MUG-RED", "inventory": [
                {"id": 77, "quantity": 2}, {"id": 78, "quantity": 3},
            ]}]),
        ],
    )
    EntityUpserter(store, test_settings).upsert_orders(tenant, [order], now=NOW)
    rows = sorted(store.select(ShipmentItem), key=lambda r: r["inventory_id"])
    assert [(r["inventory_id"], r["quantity"]) for r in rows] == [(77, 2), (78, 3)]


def test_shipment_without_products_gets_synthesized_items(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    order = api_order(
        1003,
        products=[{"id": 601, "sku": "TEE-M", "quantity": 4}],
        shipments=[api_shipment(9003, products=[])],
    )
    result = EntityUpserter(store, test_settings).upsert_orders(tenant, [order], now=NOW)

    rows = store.select(ShipmentItem)
    assert len(rows) == 1
    assert rows[0]["synthesized"]
    assert rows[0]["quantity"] == 4
    assert rows[0]["shipment_id"] == "9003"
    assert result.shipment_items_synthesized == 1


def test_order_items_without_product_id_are_dropped(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    order = api_order(1004, products=[{"sku": "NO-ID", "quantity": 1}, {"id": 7, "sku": "OK", "quantity": 1}])
    result = EntityUpserter(store, test_settings).upsert_orders(tenant, [order], now=NOW)
    assert result.order_items == 1
    assert [r["sku"] for r in store.select(OrderItem)] == ["OK"]


def test_cartons_are_replaced_per_shipment(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    upserter = EntityUpserter(store, test_settings)
    first = api_order(1005, shipments=[api_shipment(9005, parent_cartons=[
        {"id": 1, "barcode": "C-1"}, {"id": 2, "barcode": "C-2"},
    ])])
    second = api_order(1005, shipments=[api_shipment(9005, parent_cartons=[{"id": 3, "barcode": "C-3"}])])

    upserter.upsert_orders(tenant, [first], now=NOW)
    upserter.upsert_orders(tenant, [second], now=NOW)
    assert [r["barcode"] for r in store.select(ShipmentCarton)] == ["C-3"]


def test_malformed_records_are_skipped(store, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    result = EntityUpserter(store, test_settings).upsert_orders(
        tenant, [{"order_number": "no id"}, "garbage", api_order(1006, shipments=[{"status": "no id"}])], now=NOW
    )
    assert result.orders.found == 1
    assert result.shipments.found == 0
    assert result.errors == []


# ---------------------------------------------------------------------------
# Partial store failures
# ---------------------------------------------------------------------------

def test_failed_order_batch_does_not_stop_later_batches(engine, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    store = Store(engine=engine, batch_size=2)
    _fail_inserts(engine, "orders", on_calls={2})

    result = EntityUpserter(store, test_settings).upsert_orders(
        tenant, [api_order(2000 + i) for i in range(6)], now=NOW
    )

    assert result.orders.found == 6
    assert result.orders.upserted == 4
    assert len(result.errors) == 1
    assert result.errors[0].startswith("orders batch 2")
    assert sorted(r["shipbob_order_id"] for r in store.select(Order)) == ["2000", "2001", "2004", "2005"]
    assert set(result.order_id_map) == {"2000", "2001", "2004", "2005"}


def test_failed_item_replacement_keeps_previous_items(store, engine, test_settings, make_tenant):
    tenant = make_tenant("Acme")
    upserter = EntityUpserter(store, test_settings)
    upserter.upsert_orders(tenant, [_order_with_items()], now=NOW)
    before = sorted(r["sku"] for r in store.select(ShipmentItem))

    _fail_inserts(engine, "shipment_items", on_calls={1})
    result = upserter.upsert_orders(tenant, [_order_with_items()], now=NOW)

    assert result.shipment_items == 0
    assert len(result.errors) == 1
    assert result.errors[0].startswith("shipment_items replace batch 1")
    assert sorted(r["sku"] for r in store.select(ShipmentItem)) == before == ["MUG-BLUE", "MUG-RED"]
