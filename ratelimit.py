"""
In-process request rate limiting keyed by client address.
"""

import logging
import threading
import time
from collections import deque
from typing import Deque, Dict

from fastapi import Request

from errors import TooManyRequests

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window limiter: at most `max_requests` per `window_seconds` per key."""

    def __init__(self, max_requests: int, window_seconds: float, message: str = None):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.message = message
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> Deque[float]:
        hits = self._hits.setdefault(key, deque())
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def hit(self, key: str) -> int:
        """Record a request for `key`; returns how many remain in the window."""
        now = time.monotonic()
        with self._lock:
            hits = self._prune(key, now)
            if len(hits) >= self.max_requests:
                logger.warning("Rate limit exceeded for %s", key)
                raise TooManyRequests(self.message)
            hits.append(now)
            return self.max_requests - len(hits)

    def remaining(self, key: str) -> int:
        with self._lock:
            return max(0, self.max_requests - len(self._prune(key, time.monotonic())))

    def reset(self, key: str = None):
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)

    def __call__(self, request: Request):
        # Usable directly as a FastAPI dependency
        key = request.client.host if request.client else "unknown"
        self.hit(key)
