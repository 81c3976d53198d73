#!/usr/bin/env python3
"""
Utility classes and functions for the channel digest.

This module contains shared utilities used by the fetcher and summarizer,
including rate limiting, rate-limit delays, timestamp parsing and log helpers.
"""

from asyncio import Lock, sleep
from datetime import datetime, timezone
from time import time
from typing import Any, Optional

from config import get_logger

logger = get_logger("utils")


class RateLimiter:
    """A simple interval rate limiter for controlling request rates.

    Ensures requests don't exceed a specified rate by introducing delays
    when necessary. Safe to share between concurrent tasks.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        """Wait, if necessary, until another request is allowed."""
        if self.min_interval <= 0:
            return

        async with self._lock:
            current_time = time()
            time_since_last = current_time - self.last_request_time

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)

            self.last_request_time = time()


def rate_limit_delay(retry_after: float, margin: float) -> float:
    """Seconds to wait after a rate-limit response: server delay plus a safety margin."""
    return max(0.0, float(retry_after)) + max(0.0, margin)


def parse_retry_after(value: Any) -> Optional[float]:
    """Parse a retry-after value (JSON number or header string) into seconds."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


def parse_iso8601(ts: str) -> datetime:
    """Parse an ISO 8601 timestamp into a timezone-aware datetime (UTC if naive).

    Raises:
        ValueError: if the value is empty or not a valid timestamp
    """
    if not ts or not isinstance(ts, str):
        raise ValueError(f"Invalid timestamp: {ts!r}")
    value = ts.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def mask_secret(value: Optional[str], show: int = 4) -> str:
    """Mask a secret value for safe logging (keep only first/last few chars)."""
    if not value:
        return "<missing>"
    v = str(value)
    if len(v) <= show * 2:
        return "*" * len(v)
    return f"{v[:show]}***{v[-show:]}"


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)
