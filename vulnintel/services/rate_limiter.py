"""
Client-side token buckets for outbound calls.

Per-process smoothing only; provider-side 429s are still handled by the
HTTP client's retry policy.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional
from urllib.parse import urlparse


class ClientRateLimiter:
    """Async token bucket. Tokens refill continuously; capacity defaults to the per-minute rate."""

    def __init__(
        self,
        calls_per_minute: int = 60,
        *,
        burst: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be > 0")
        self._rate_per_sec: float = calls_per_minute / 60.0
        self._capacity: float = float(burst if burst is not None else calls_per_minute)
        self._tokens: float = self._capacity
        self._clock = clock or time.monotonic
        self._updated: float = self._clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate_per_sec)
            self._updated = now

    async def wait(self, tokens: float = 1.0) -> None:
        if tokens <= 0:
            return
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return
                sleep_for = (tokens - self._tokens) / self._rate_per_sec
            # sleep outside the lock so other hosts' callers progress
            await asyncio.sleep(max(0.001, sleep_for))


class HostRateLimiter:
    """One ``ClientRateLimiter`` per URL host, created on first use."""

    def __init__(
        self,
        calls_per_minute: int = 120,
        *,
        overrides: Optional[Dict[str, int]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.calls_per_minute = calls_per_minute
        self.overrides = {k.lower(): v for k, v in (overrides or {}).items()}
        self._clock = clock
        self._buckets: Dict[str, ClientRateLimiter] = {}

    def for_host(self, host: str) -> ClientRateLimiter:
        host = host.lower()
        bucket = self._buckets.get(host)
        if bucket is None:
            rate = self.overrides.get(host, self.calls_per_minute)
            bucket = ClientRateLimiter(rate, clock=self._clock)
            self._buckets[host] = bucket
        return bucket

    async def wait(self, url: str) -> None:
        await self.for_host(urlparse(url).netloc or "generic").wait()
