# infrastructure/security/rate_limiter.py
import time
from collections import deque
from typing import Callable, Deque, Dict

from domain.errors import RateLimitedError


def _trim(window: Deque[float], cutoff: float):
    while window and window[0] <= cutoff:
        window.popleft()


class SlidingWindowRateLimiter:
    """Per-source and global request limits over a sliding time window"""

    def __init__(self, per_source: int, global_limit: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        if per_source < 1 or global_limit < 1:
            raise ValueError("rate limits must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.per_source = per_source
        self.global_limit = global_limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._global: Deque[float] = deque()
        self._sources: Dict[str, Deque[float]] = {}

    def check(self, source: str):
        """Record one request from ``source`` or raise ``RateLimitedError``"""
        now = self._clock()
        cutoff = now - self.window_seconds

        _trim(self._global, cutoff)
        if len(self._global) >= self.global_limit:
            retry_after = self._global[0] + self.window_seconds - now
            raise RateLimitedError("Global webhook rate limit exceeded",
                                   scope="global", retry_after=max(retry_after, 0.0))

        window = self._sources.setdefault(source, deque())
        _trim(window, cutoff)
        if len(window) >= self.per_source:
            retry_after = window[0] + self.window_seconds - now
            raise RateLimitedError(f"Rate limit exceeded for source {source}",
                                   scope="source", retry_after=max(retry_after, 0.0))

        window.append(now)
        self._global.append(now)

    def prune(self) -> int:
        """Forget sources with no requests left in the window"""
        cutoff = self._clock() - self.window_seconds
        _trim(self._global, cutoff)
        idle = []
        for source, window in self._sources.items():
            _trim(window, cutoff)
            if not window:
                idle.append(source)
        for source in idle:
            del self._sources[source]
        return len(idle)


class RejectionTracker:
    """Counts rejected deliveries per source so repeated failures can escalate"""

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._rejections: Dict[str, Deque[float]] = {}

    def record(self, source: str) -> int:
        now = self._clock()
        window = self._rejections.setdefault(source, deque())
        _trim(window, now - self.window_seconds)
        window.append(now)
        return len(window)

    def prune(self) -> int:
        cutoff = self._clock() - self.window_seconds
        idle = []
        for source, window in self._rejections.items():
            _trim(window, cutoff)
            if not window:
                idle.append(source)
        for source in idle:
            del self._rejections[source]
        return len(idle)
