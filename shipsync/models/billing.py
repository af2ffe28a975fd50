"""
Billing and attribution lookup models

Transactions come from the provider's transactions:query endpoint and
often carry no tenant. Returns, receiving orders and products are synced
so the attribution cascade can resolve them.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Float, Boolean, UniqueConstraint
from datetime import datetime

from shipsync.models.base import Base


class Transaction(Base):
    """
    Provider billing transaction.

    client_id only ever moves from NULL to a tenant: writes go through
    COALESCE(incoming, existing) or a `client_id IS NULL` guard.
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String, unique=True, index=True, nullable=False)

    # Attribution
    client_id = Column(Integer, index=True, nullable=True)
    merchant_id = Column(String, nullable=True)

    # What the charge refers to
    reference_id = Column(String, index=True, nullable=True)
    reference_type = Column(String, index=True, nullable=True)  # Shipment, FC, Return, Default, TicketNumber, WRO, URO
    transaction_type = Column(String, nullable=True)
    transaction_fee = Column(String, nullable=True)  # Fee label, e.g. "Shipping", "Payment", "Credit"

    cost = Column(Float, nullable=True)
    charge_date = Column(DateTime, index=True, nullable=True)

    # Invoice
    invoice_id = Column(Integer, index=True, nullable=True)
    invoice_date = Column(DateTime, nullable=True)
    invoiced_status = Column(Boolean, default=False)

    fulfillment_center = Column(String, nullable=True)
    additional_details = Column(JSON, nullable=True)
    tracking_id = Column(String, index=True, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Return(Base):
    """Provider return order (GET /return)."""
    __tablename__ = "returns"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    merchant_id = Column(String, nullable=True)

    shipbob_return_id = Column(String, unique=True, index=True, nullable=False)
    reference_id = Column(String, nullable=True)
    store_order_id = Column(String, nullable=True)
    original_shipment_id = Column(String, nullable=True)

    status = Column(String, nullable=True)
    return_type = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    fc_name = Column(String, nullable=True)

    insert_date = Column(DateTime, nullable=True)
    completed_date = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)


class ReceivingOrder(Base):
    """Warehouse receiving order (WRO) from GET /receiving."""
    __tablename__ = "receiving_orders"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    merchant_id = Column(String, nullable=True)

    shipbob_receiving_id = Column(String, unique=True, index=True, nullable=False)
    purchase_order_number = Column(String, nullable=True)
    status = Column(String, nullable=True)
    package_type = Column(String, nullable=True)
    fc_name = Column(String, nullable=True)

    expected_arrival_date = Column(DateTime, nullable=True)
    insert_date = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """
    Catalog product. `variants` keeps the raw variant list, whose
    inventory.inventory_id values feed the storage (FC) attribution index.
    """
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("client_id", "shipbob_product_id", name="uq_products_client_product"),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    merchant_id = Column(String, nullable=True)

    shipbob_product_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    variants = Column(JSON, nullable=True)

    synced_at = Column(DateTime, default=datetime.utcnow)


class FulfillmentCenter(Base):
    """Fulfillment center reference data (name -> country)."""
    __tablename__ = "fulfillment_centers"

    id = Column(Integer, primary_key=True, index=True)
    fc_id = Column(Integer, unique=True, nullable=True)
    name = Column(String, unique=True, nullable=False)
    country = Column(String, nullable=True)
