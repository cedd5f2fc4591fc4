"""
Timing utilities for the ParkStay bot

Clock helpers, request rate limiting and retry pacing.
"""
import asyncio
import time
import logging
from datetime import datetime
from typing import Callable
import pytz

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(pytz.UTC)


def make_clock(timezone: str = "Australia/Perth") -> Clock:
    """Return a clock producing aware datetimes in the given timezone"""
    tz = pytz.timezone(timezone)
    return lambda: datetime.now(tz)


def format_countdown(total_seconds: int) -> str:
    """Format a number of seconds as e.g. '1d 2h 5m 3s'"""
    if total_seconds <= 0:
        return "NOW!"

    days, rest = divmod(total_seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)

    parts = [f"{value}{unit}" for value, unit in ((days, "d"), (hours, "h"), (minutes, "m")) if value]
    parts.append(f"{seconds}s")
    return " ".join(parts)


def format_wait(seconds: int) -> str:
    """Human-readable queue wait estimate"""
    if seconds < 60:
        return f"{seconds} seconds"
    minutes = -(-seconds // 60)
    return f"{minutes} minute{'s' if minutes > 1 else ''}"


class RateLimiter:
    """
    Token bucket shared by every portal request.

    The bucket holds at most one second's worth of requests; callers that
    find it empty sleep until the next token is due.
    """

    def __init__(self, requests_per_second: float = 2.0):
        self.rate = requests_per_second
        self.tokens = float(requests_per_second)
        self.updated = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            now = time.monotonic()
            self.tokens = min(self.rate, self.tokens + (now - self.updated) * self.rate)
            self.updated = now

            if self.tokens >= 1:
                self.tokens -= 1
                return

            delay = (1 - self.tokens) / self.rate
            logger.debug(f"Rate limited, waiting {delay:.2f}s")
            await asyncio.sleep(delay)
            self.tokens = 0
            self.updated = time.monotonic()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *args):
        pass


class RetryStrategy:
    """
    Counts attempts against a fixed budget with a constant pause between them.

    The notification dispatcher uses it to allow one retry after a
    transient delivery failure.
    """

    def __init__(self, max_attempts: int = 2, base_delay_ms: int = 1000):
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.attempts = 0

    def should_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def record_attempt(self):
        self.attempts += 1

    async def wait(self):
        if self.base_delay_ms > 0:
            await asyncio.sleep(self.base_delay_ms / 1000)
