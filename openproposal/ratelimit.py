"""Best-effort fixed-window rate limiting.

The in-memory limiter is per process and not shared between instances; a
shared store can be swapped in behind the same ``try_acquire`` call.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Protocol

from starlette.requests import Request

log = logging.getLogger(__name__)

_CLIENT_HEADERS = ("x-real-ip", "cf-connecting-ip")


class RateLimiter(Protocol):
    def try_acquire(self, key: str, limit: int, window: float) -> bool: ...


class InMemoryRateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: dict[tuple[str, int], int] = {}
        self._current_bucket: int | None = None

    def try_acquire(self, key: str, limit: int, window: float) -> bool:
        bucket = math.floor(self._clock() / window)
        with self._lock:
            if bucket != self._current_bucket:
                # Rollover: drop counters from earlier windows.
                self._counts = {k: v for k, v in self._counts.items() if k[1] >= bucket}
                self._current_bucket = bucket
            count = self._counts.get((key, bucket), 0)
            if count >= limit:
                return False
            self._counts[(key, bucket)] = count + 1
            return True


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in _CLIENT_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.strip()
    if request.client is not None:
        return request.client.host
    return "127.0.0.1"
