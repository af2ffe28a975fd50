"""
Fulfillment Data Models

Orders, shipments and their line items / cartons as synced from the
provider's order listing (GET /order). Shipments carry the milestone
timestamps filled by the timeline poller.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Float, Boolean, Index, UniqueConstraint
from datetime import datetime

from shipsync.models.base import Base


class Order(Base):
    """
    Provider order, unique per tenant.

    deleted_at is set only by reconciliation after a 404 point check and
    cleared by the next upsert that sees the order again.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("client_id", "shipbob_order_id", name="uq_orders_client_order"),
        Index("ix_orders_client_import_date", "client_id", "order_import_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    merchant_id = Column(String, nullable=True)

    # Provider identifiers
    shipbob_order_id = Column(String, nullable=False)
    store_order_id = Column(String, index=True, nullable=True)  # Storefront order number
    reference_id = Column(String, nullable=True)

    # Customer / destination
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    country = Column(String, nullable=True)

    # Order details
    status = Column(String, index=True, nullable=True)
    order_type = Column(String, nullable=True)
    shipping_method = Column(String, nullable=True)
    channel_id = Column(Integer, nullable=True)
    channel_name = Column(String, nullable=True)
    application_name = Column(String, nullable=True)
    total_price = Column(Float, nullable=True)
    total_shipments = Column(Integer, default=0)
    tags = Column(JSON, nullable=True)

    # Upstream timestamps
    order_import_date = Column(DateTime, nullable=True)  # Provider creation time
    purchase_date = Column(DateTime, nullable=True)

    # Sync bookkeeping
    last_verified_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, index=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Shipment(Base):
    """
    Provider shipment, globally unique by shipment_id.

    Timeline milestones (event_*) arrive independently of the order listing
    and may be partial or out of order.
    """
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    merchant_id = Column(String, nullable=True)
    order_id = Column(Integer, index=True, nullable=True)  # orders.id

    # Provider identifiers
    shipment_id = Column(String, unique=True, index=True, nullable=False)
    shipbob_order_id = Column(String, nullable=True)

    # Tracking
    tracking_id = Column(String, index=True, nullable=True)
    tracking_url = Column(String, nullable=True)
    carrier = Column(String, nullable=True)
    carrier_service = Column(String, nullable=True)

    # Status
    status = Column(String, index=True, nullable=True)
    status_details = Column(JSON, nullable=True)

    # Route
    fc_name = Column(String, nullable=True)
    origin_country = Column(String, nullable=True)
    destination_country = Column(String, nullable=True)
    zone_used = Column(Integer, nullable=True)
    application_name = Column(String, nullable=True)

    # Dimensions (inches) and weights (ounces)
    length_in = Column(Float, nullable=True)
    width_in = Column(Float, nullable=True)
    height_in = Column(Float, nullable=True)
    actual_weight_oz = Column(Float, nullable=True)
    dim_weight_oz = Column(Float, nullable=True)
    billable_weight_oz = Column(Float, nullable=True)

    # Upstream timestamps
    created_date = Column(DateTime, index=True, nullable=True)  # Provider creation time
    delivered_date = Column(DateTime, nullable=True)
    last_update_at = Column(DateTime, nullable=True)

    # Timeline milestones
    event_created = Column(DateTime, nullable=True)
    event_picked = Column(DateTime, nullable=True)
    event_packed = Column(DateTime, nullable=True)
    event_labeled = Column(DateTime, nullable=True)
    event_labelvalidated = Column(DateTime, nullable=True)
    event_intransit = Column(DateTime, nullable=True)
    event_outfordelivery = Column(DateTime, nullable=True)
    event_delivered = Column(DateTime, nullable=True)
    event_deliveryattemptfailed = Column(DateTime, nullable=True)
    event_logs = Column(JSON, nullable=True)  # Raw timeline payload
    transit_time_days = Column(Float, nullable=True)
    timeline_checked_at = Column(DateTime, index=True, nullable=True)

    # Sync bookkeeping
    last_verified_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, index=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class OrderItem(Base):
    """Order line item, unique per (order, product)."""
    __tablename__ = "order_items"
    __table_args__ = (
        UniqueConstraint("order_id", "shipbob_product_id", name="uq_order_items_order_product"),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    merchant_id = Column(String, nullable=True)
    order_id = Column(Integer, index=True, nullable=False)

    shipbob_product_id = Column(Integer, nullable=False)
    sku = Column(String, index=True, nullable=True)
    reference_id = Column(String, nullable=True)
    name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=True)
    unit_price = Column(Float, nullable=True)
    gtin = Column(String, nullable=True)
    upc = Column(String, nullable=True)
    external_line_id = Column(Integer, nullable=True)


class ShipmentItem(Base):
    """Shipment line item. Replaced wholesale on every sync of its shipment."""
    __tablename__ = "shipment_items"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    merchant_id = Column(String, nullable=True)
    shipment_id = Column(String, index=True, nullable=False)

    shipbob_product_id = Column(Integer, nullable=True)
    sku = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    name = Column(String, nullable=True)
    inventory_id = Column(Integer, nullable=True)
    lot = Column(String, nullable=True)
    expiration_date = Column(DateTime, nullable=True)
    quantity = Column(Integer, nullable=True)
    serial_numbers = Column(JSON, nullable=True)
    is_dangerous_goods = Column(Boolean, default=False)
    synthesized = Column(Boolean, default=False)  # Built from order items, shipment reported none


class ShipmentCarton(Base):
    """Shipment carton. Replaced wholesale on every sync of its shipment."""
    __tablename__ = "shipment_cartons"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    merchant_id = Column(String, nullable=True)
    shipment_id = Column(String, index=True, nullable=False)

    carton_id = Column(Integer, nullable=True)
    barcode = Column(String, nullable=True)
    carton_type = Column(String, nullable=True)
    parent_barcode = Column(String, nullable=True)
    length_in = Column(Float, nullable=True)
    width_in = Column(Float, nullable=True)
    depth_in = Column(Float, nullable=True)
    weight_oz = Column(Float, nullable=True)
    contents = Column(JSON, nullable=True)
