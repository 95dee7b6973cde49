"""Per-client fixed-window request admission."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int | None = None


class RateLimiter:
    """Coarse fixed-window limiter keyed by client address.

    Bursts across a window boundary are accepted.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def configure(self, *, max_requests: int, window_seconds: float) -> None:
        """Apply new limits; running windows keep their reset time."""
        with self._lock:
            self.max_requests = max_requests
            self.window_seconds = window_seconds

    def admit(self, key: str, now: float | None = None) -> RateLimitDecision:
        """Count one request for `key` and decide whether it may proceed."""
        current = self._clock() if now is None else now
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or current >= entry.reset_at:
                entry = RateLimitEntry(count=0, reset_at=current + self.window_seconds)
                self._entries[key] = entry

            if entry.count >= self.max_requests:
                retry_after = max(1, math.ceil(entry.reset_at - current))
                return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)

            entry.count += 1
            return RateLimitDecision(allowed=True)

    def prune(self, now: float | None = None) -> int:
        """Drop entries whose window has ended."""
        current = self._clock() if now is None else now
        with self._lock:
            stale = [key for key, entry in self._entries.items() if current >= entry.reset_at]
            for key in stale:
                del self._entries[key]
        return len(stale)
