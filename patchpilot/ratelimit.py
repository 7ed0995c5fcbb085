"""
Sliding-window admission control.

Each key (e.g. "llm:anthropic") keeps the timestamps of its admissions in
the last `window_seconds`. A full window blocks the caller on the key's
condition variable until the oldest admission ages out.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field

from loguru import logger


@dataclass
class _Window:
    admitted: deque[float] = field(default_factory=deque)
    cond: threading.Condition = field(default_factory=threading.Condition)


class SlidingWindowLimiter:
    """Per-key limiter. Different keys never block each other."""

    def __init__(self, max_requests: int = 100, window_seconds: float = 60.0, clock=time.monotonic):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._registry_lock = threading.Lock()

    def _window(self, key: str) -> _Window:
        with self._registry_lock:
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = _Window()
            return window

    def _evict(self, window: _Window, now: float) -> None:
        cutoff = now - self.window_seconds
        while window.admitted and window.admitted[0] <= cutoff:
            window.admitted.popleft()

    def acquire(self, key: str) -> float:
        """Block until `key` has room, record the admission, return seconds waited."""
        window = self._window(key)
        start = self._clock()
        logged = False

        with window.cond:
            while True:
                now = self._clock()
                self._evict(window, now)
                if len(window.admitted) < self.max_requests:
                    window.admitted.append(now)
                    break

                wait_for = window.admitted[0] + self.window_seconds - now
                if not logged:
                    logger.info(f"[LIMITER] {key} at capacity — waiting {wait_for:.2f}s")
                    logged = True
                window.cond.wait(timeout=max(wait_for, 0.001))

        return self._clock() - start

    def usage(self, key: str) -> int:
        """Admissions currently inside the window for `key`."""
        with self._registry_lock:
            window = self._windows.get(key)
        if window is None:
            return 0
        with window.cond:
            self._evict(window, self._clock())
            return len(window.admitted)

    def reset(self, key: str) -> None:
        window = self._window(key)
        with window.cond:
            window.admitted.clear()
            window.cond.notify_all()

    def clear(self) -> None:
        """Forget every key. Blocked callers wake and are admitted into a fresh window."""
        with self._registry_lock:
            windows = list(self._windows.values())
            self._windows.clear()
        for window in windows:
            with window.cond:
                window.admitted.clear()
                window.cond.notify_all()
