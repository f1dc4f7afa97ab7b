from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable

from lotty.errors import TooManyRequests


class SlidingWindowLimiter:
    """
    In-memory sliding-window counter keyed by an arbitrary string (per-process).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = Lock()
        self._events: dict[str, deque[float]] = {}

    def hit(self, *, key: str, limit: int, window_seconds: int, detail: str = "Too many requests") -> None:
        now = self._clock()
        window_start = now - float(window_seconds)
        with self._lock:
            self._prune(window_start)
            q = self._events.setdefault(key, deque())
            if len(q) >= int(limit):
                raise TooManyRequests(detail)
            q.append(now)

    def _prune(self, window_start: float) -> None:
        # Drop events older than the window, and keys left with none.
        for key in list(self._events):
            q = self._events[key]
            while q and q[0] < window_start:
                q.popleft()
            if not q:
                del self._events[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._events.clear()
            else:
                self._events.pop(key, None)


login_limiter = SlidingWindowLimiter()
