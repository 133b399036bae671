"""In-process sliding-window rate limiting keyed by client."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict

from .errors import RateLimitError


MAX_TRACKED_KEYS = 50000


@dataclass
class RateLimiter:
    max_requests: int = 100
    window_seconds: float = 60
    time_fn: Callable[[], float] = time.monotonic
    _buckets: Dict[str, Deque[float]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def allow(self, key: str) -> bool:
        return self.retry_after(key) == 0

    def retry_after(self, key: str) -> float:
        """Record a hit for ``key``; return 0 if allowed, else seconds to wait."""
        now = float(self.time_fn())
        threshold = now - self.window_seconds
        with self._lock:
            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= threshold:
                bucket.popleft()
            if len(bucket) >= self.max_requests:
                return max(bucket[0] - threshold, 0.001)
            bucket.append(now)

            # Keep memory bounded for long-running processes.
            if len(self._buckets) > MAX_TRACKED_KEYS:
                self._prune(threshold)
        return 0

    def check(self, key: str) -> None:
        wait = self.retry_after(key)
        if wait:
            raise RateLimitError(retry_after=math.ceil(wait))

    def _prune(self, threshold: float) -> None:
        stale = [k for k, b in self._buckets.items() if not b or b[-1] <= threshold]
        for key in stale:
            self._buckets.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
