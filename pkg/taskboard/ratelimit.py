# Taskboard — sliding-window rate limiter
#
# Each key (a user id, or the remote address for anonymous calls) gets a
# deque of request times. Requests older than the window are evicted on
# every check; a request is refused once the window holds max_requests.

import threading
import time
from collections import deque
from typing import Dict, Optional

from .errors import RateLimited


class SlidingWindowLimiter:
    """Per-key request limiter over a sliding time window."""

    def __init__(self, max_requests: int = 100, window_secs: float = 900.0):
        self.max_requests = max_requests
        self.window_secs = window_secs
        self._windows: Dict[str, deque] = {}
        self._lock = threading.Lock()

    def _evict(self, window: deque, now: float):
        while window and (now - window[0]) > self.window_secs:
            window.popleft()

    def hit(self, key: str, now: Optional[float] = None) -> None:
        """Record one request for key. Raises RateLimited when over the limit."""
        now = time.monotonic() if now is None else now
        with self._lock:
            window = self._windows.setdefault(key, deque())
            self._evict(window, now)
            if len(window) >= self.max_requests:
                retry_after = self.window_secs - (now - window[0])
                raise RateLimited(
                    "Rate limit exceeded. Please wait and try again.",
                    retry_after=max(retry_after, 0.0),
                )
            window.append(now)

    def remaining(self, key: str, now: Optional[float] = None) -> int:
        now = time.monotonic() if now is None else now
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return self.max_requests
            self._evict(window, now)
            return max(self.max_requests - len(window), 0)

    def __len__(self) -> int:
        """Number of keys holding a window."""
        with self._lock:
            return len(self._windows)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
