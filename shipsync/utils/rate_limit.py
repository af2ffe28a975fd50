"""
Request pacing and rate-limit handling for upstream API calls.

Every token gets one RequestPacer, which spaces calls by a fixed delay.
A 429 is normally surfaced to the caller as a skip; only the bulk
transaction query waits and retries, once.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Optional

from shipsync.utils.logger import log

MAX_EVENTS = 5


@dataclass
class RateLimitStats:
    """Tracks rate-limit waits for a single connector. Keeps the first few events only."""
    waits: int = 0
    total_wait_seconds: float = 0.0
    skipped: int = 0
    events: List[str] = field(default_factory=list)

    def _note(self, event: str):
        if len(self.events) < MAX_EVENTS:
            self.events.append(event)

    def record_wait(self, label: str, seconds: float):
        self.waits += 1
        self.total_wait_seconds += seconds
        self._note(f"{label}: waited {seconds:.1f}s")

    def record_skip(self, label: str):
        self.skipped += 1
        self._note(f"{label}: skipped")

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "waits": self.waits,
            "total_wait_seconds": round(self.total_wait_seconds, 2),
            "skipped": self.skipped,
            "events": list(self.events),
        }


class RequestPacer:
    """Serializes calls on one token and keeps a fixed gap between them."""

    def __init__(self, delay_seconds: float = 0.1):
        self.delay_seconds = delay_seconds
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    async def wait(self):
        async with self._lock:
            if self._last_call is not None and self.delay_seconds > 0:
                remaining = self.delay_seconds - (time.monotonic() - self._last_call)
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last_call = time.monotonic()


def retry_after_seconds(headers: Mapping[str, str], default: float) -> float:
    """Seconds to wait from a Retry-After header, falling back to `default`."""
    raw = None
    for key, value in (headers or {}).items():
        if key.lower() == "retry-after":
            raw = value
            break
    if raw is None:
        return default
    try:
        return max(float(raw), 0.0)
    except (TypeError, ValueError):
        return default


async def retry_once_on_rate_limit(
    operation: Callable[[], Awaitable[Any]],
    default_wait: float,
    label: str = "request",
    stats: Optional[RateLimitStats] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Run `operation`; on a 429 wait once and run it again.

    The operation must return a response object with `status` and `headers`.
    Whatever the second attempt returns (429 included) goes back to the caller.
    """
    response = await operation()
    if response.status != 429:
        return response

    delay = retry_after_seconds(response.headers, default_wait)
    log.warning(f"[RateLimit] {label} rate limited, waiting {delay:.0f}s before one retry")
    if stats is not None:
        stats.record_wait(label, delay)
    await sleep(delay)
    return await operation()
