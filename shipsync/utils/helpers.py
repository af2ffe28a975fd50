"""
Helper utilities
"""
from datetime import datetime, timezone
from typing import Any, List, Optional
from urllib.parse import parse_qs, urlparse
import math

from dateutil import parser as date_parser


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the store keeps naive UTC)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an upstream timestamp into naive UTC. Malformed input gives None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.parse(str(value))
        except (ValueError, OverflowError, TypeError):
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat_z(dt: datetime) -> str:
    """Format a naive UTC datetime the way the upstream API expects it"""
    return dt.isoformat(timespec="milliseconds") + "Z"


def to_float(value: Any) -> Optional[float]:
    """Safely convert to float"""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> Optional[int]:
    """Safely convert to int"""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_str(value: Any) -> Optional[str]:
    """String form of an identifier, None for empty values"""
    if value is None or value == "":
        return None
    return str(value)


def round_half_up(value: float, digits: int = 0) -> float:
    """Round half away from zero for positive values (Python's round() is banker's)"""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def cursor_from_next(next_value: Optional[str]) -> Optional[str]:
    """
    Extract the opaque cursor from a `next` field.

    The provider returns either the bare cursor or a full URL carrying it
    as a `cursor` query parameter.
    """
    if not next_value:
        return None
    if "://" not in next_value and "?" not in next_value:
        return next_value
    query = parse_qs(urlparse(next_value).query)
    for key, values in query.items():
        if key.lower() == "cursor" and values:
            return values[0]
    return None
