"""Database models for shipsync"""

from shipsync.models.tenant import Tenant, SyncCheckpoint

from shipsync.models.fulfillment import (
    Order,
    Shipment,
    OrderItem,
    ShipmentItem,
    ShipmentCarton
)

from shipsync.models.billing import (
    Transaction,
    Return,
    ReceivingOrder,
    Product,
    FulfillmentCenter
)

__all__ = [
    "Tenant",
    "SyncCheckpoint",
    "Order",
    "Shipment",
    "OrderItem",
    "ShipmentItem",
    "ShipmentCarton",
    "Transaction",
    "Return",
    "ReceivingOrder",
    "Product",
    "FulfillmentCenter",
]
