"""Upstream API connectors for shipsync"""

from shipsync.connectors.base_connector import BaseConnector, APIError, RateLimitedError
from shipsync.connectors.shipbob_connector import ShipBobConnector, ApiResponse

__all__ = [
    "BaseConnector",
    "APIError",
    "RateLimitedError",
    "ShipBobConnector",
    "ApiResponse"
]
