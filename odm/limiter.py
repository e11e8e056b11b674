"""A shared token-bucket rate limiter for download throughput."""

from __future__ import annotations

import asyncio
import time


class SpeedLimiter:
    """Token bucket shared by many tasks; a rate of 0 means unlimited.

    The bucket's capacity (burst size) equals the rate, and it starts full.
    """

    def __init__(self, rate_bytes_per_sec: int = 0) -> None:
        self._lock = asyncio.Lock()
        self._rate = 0
        self._tokens = 0
        self._apply_rate(rate_bytes_per_sec)
        self._last_refill = time.monotonic()

    @property
    def rate(self) -> int:
        """Current limit in bytes per second (0 means unlimited)."""
        return self._rate

    def _apply_rate(self, rate: int) -> None:
        if rate < 0:
            raise ValueError("rate must not be negative")
        self._rate = rate
        self._tokens = rate

    async def set_rate(self, rate_bytes_per_sec: int) -> None:
        """Change the limit and refill the bucket to the new capacity."""
        async with self._lock:
            self._apply_rate(rate_bytes_per_sec)

    def _refill(self) -> None:
        now = time.monotonic()
        to_add = int((now - self._last_refill) * self._rate)
        if to_add > 0:
            self._tokens = min(self._tokens + to_add, self._rate)
            self._last_refill = now

    async def take(self, amount: int) -> None:
        """Consume ``amount`` tokens, sleeping until enough have accumulated."""
        if amount < 0:
            raise ValueError("amount must not be negative")
        if amount == 0:
            return
        while True:
            async with self._lock:
                if self._rate == 0:
                    return
                self._refill()
                if self._tokens >= amount:
                    self._tokens -= amount
                    return
                wait = (amount - self._tokens) / self._rate
            await asyncio.sleep(wait)