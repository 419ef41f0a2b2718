"""
Sliding-window admission limiter for job starts.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable


class AdmissionWindow:
    """
    Allows at most `max_starts` job starts within any `window_seconds` span.
    """

    def __init__(
        self,
        *,
        max_starts: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_starts = max(1, max_starts)
        self._window_seconds = max(0.0, window_seconds)
        self._clock = clock
        self._starts: deque[float] = deque()
        self._lock = threading.Lock()

    def has_capacity(self) -> bool:
        with self._lock:
            self._prune(self._clock())
            return len(self._starts) < self._max_starts

    def record_start(self) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._starts.append(now)

    def _prune(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self._window_seconds:
            self._starts.popleft()
