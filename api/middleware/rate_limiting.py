from __future__ import annotations

import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Deque, Dict

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from settings import SETTINGS


class SlidingWindowLimiter:
    """Per-key hit counter over a sliding window. Owned by the app, not the module."""

    def __init__(
        self,
        limit: int | None = None,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit or SETTINGS.rate_limit_per_minute
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def hit(self, key: str) -> bool:
        """Count one request for ``key``; False when it is over the limit."""
        now = self._clock()
        with self._lock:
            self._evict(now)
            bucket = self._hits[key]
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True

    def _evict(self, now: float) -> None:
        # Caller holds the lock. Keys whose window has fully elapsed are dropped.
        for key in list(self._hits):
            bucket = self._hits[key]
            while bucket and now - bucket[0] > self.window_seconds:
                bucket.popleft()
            if not bucket:
                del self._hits[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limiter: SlidingWindowLimiter | None = None) -> None:
        super().__init__(app)
        self.limiter = limiter or SlidingWindowLimiter()

    async def dispatch(self, request: Request, call_next):
        ip = request.client.host if request.client else "unknown"
        if not self.limiter.hit(ip):
            return JSONResponse({"detail": "rate_limited"}, status_code=429)
        return await call_next(request)
