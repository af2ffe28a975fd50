"""
Base connector class for upstream APIs
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from datetime import datetime

from shipsync.utils.helpers import utcnow
from shipsync.utils.rate_limit import RateLimitStats


class APIError(Exception):
    """Non-success response from an upstream API."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitedError(APIError):
    """Upstream answered 429. Callers treat it as a skip, not a failure."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class BaseConnector(ABC):
    """Base class for upstream API connectors"""

    def __init__(self, name: str):
        self.name = name
        self.last_request_at: Optional[datetime] = None
        self.request_count = 0
        self.error_count = 0
        self.not_found_count = 0
        self.rate_limit_stats = RateLimitStats()

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Validate credentials against the upstream API"""
        pass

    def record_response(self, status: int):
        """Update request counters from a response status"""
        self.last_request_at = utcnow()
        self.request_count += 1
        if status == 404:
            self.not_found_count += 1
        elif status == 429:
            self.rate_limit_stats.record_skip(self.name)
        elif status >= 400:
            self.error_count += 1

    def get_status(self) -> Dict[str, Any]:
        """Get connector status"""
        return {
            "name": self.name,
            "last_request_at": self.last_request_at.isoformat() if self.last_request_at else None,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "not_found_count": self.not_found_count,
            "error_rate": self.error_count / max(self.request_count, 1),
            "rate_limits": self.rate_limit_stats.to_dict(),
        }
