# app/utils/rate_limiter.py
"""Async sliding-window rate limiter: at most `max_calls` acquisitions per `period` seconds."""

import asyncio
import time
from collections import deque


class RateLimiter:
    def __init__(self, max_calls: int, period: float = 1.0):
        self.max_calls = max_calls
        self.period = period
        self._calls: deque = deque()
        self._lock = asyncio.Lock()

    async def acquire(self):
        if self.max_calls <= 0:   # disabled
            return
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                await asyncio.sleep(self.period - (now - self._calls[0]))
