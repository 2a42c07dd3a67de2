"""Simple in-memory fixed-window rate limiter."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Tuple

CLEANUP_INTERVAL_SECONDS = 300.0


class RateLimiter:
    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def check(self, key: str) -> bool:
        """Count a request for ``key``; False once the window's limit is used up."""
        now = self.clock()
        with self._lock:
            self._prune(now)
            entry = self._windows.get(key)
            if entry is None or now > entry[1]:
                self._windows[key] = (1, now + self.window_seconds)
                return True
            count, reset_at = entry
            if count >= self.limit:
                return False
            self._windows[key] = (count + 1, reset_at)
            return True

    def _prune(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        expired = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]
        for key in expired:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)
