"""In-memory fixed window rate limiter implementation."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Protocol


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int | None = None


class RateLimiter(Protocol):
    def check(self, key: str) -> RateLimitDecision: ...

    def reset(self, key: str) -> None: ...


class FixedWindowRateLimiter:
    """Thread-safe fixed window counter keyed by caller identifier.

    Counters live in process memory, so limits only hold for a single
    process; use the Redis backend when running several instances.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        # key -> (count, window start)
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = Lock()

    def check(self, key: str) -> RateLimitDecision:
        """Count one attempt for ``key`` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now - entry[1] >= self._window:
                self._windows[key] = (1, now)
                return RateLimitDecision(True)
            count, started = entry
            if count < self._max_requests:
                self._windows[key] = (count + 1, started)
                return RateLimitDecision(True)
            remaining = self._window - (now - started)
            return RateLimitDecision(False, max(1, math.ceil(remaining)))

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)
