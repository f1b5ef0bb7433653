"""
Rate limiting for the Mindprint HTTP surface.

Sliding window limits per client and endpoint. Limits only protect the
service; they never decide whether telemetry or a certificate is valid.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from .config import Settings


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; each key keeps a deque of hit times inside the window.
    Keys idle for a whole window are swept at most once per window.
    """

    def __init__(self, rpm: int, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()
        self._next_sweep = clock() + window_seconds

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """
        Record a hit for key if the window has room.

        Returns:
            RateLimitResult with allowed status and metadata
        """
        now = self._clock()
        window_start = now - self._window

        with self._lock:
            if now >= self._next_sweep:
                self.cleanup_expired()
                self._next_sweep = now + self._window
            hits = self._hits[key]
            while hits and hits[0] <= window_start:
                hits.popleft()

            reset_at = (hits[0] + self._window) if hits else (now + self._window)
            if len(hits) >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, reset_at - now),
                )

            hits.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=self._limit - len(hits),
                reset_at=reset_at,
            )

    def reset(self, key: Optional[str] = None) -> None:
        """Reset counters for one key, or all of them."""
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()

    def cleanup_expired(self) -> int:
        """
        Drop hits that left the window and forget idle keys.

        Returns:
            Number of hits removed
        """
        window_start = self._clock() - self._window
        removed = 0
        with self._lock:
            for key in list(self._hits):
                hits = self._hits[key]
                while hits and hits[0] <= window_start:
                    hits.popleft()
                    removed += 1
                if not hits:
                    del self._hits[key]
        return removed


class EndpointLimits:
    """One RateLimiter per endpoint group, sized from settings."""

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self._limiters = {
            "init": RateLimiter(settings.init_rpm, clock=clock),
            "ingest": RateLimiter(settings.ingest_rpm, clock=clock),
            "issue": RateLimiter(settings.issue_rpm, clock=clock),
            "analyze": RateLimiter(settings.analyze_rpm, clock=clock),
        }

    def check(self, group: str, client_id: str) -> RateLimitResult:
        return self._limiters[group].check(client_id)

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()
