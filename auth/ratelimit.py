"""
auth/ratelimit.py -- Per-API-key request counters.

Fixed window per key hash: the first request opens a window of
`window_seconds`; requests inside it increment the count while it is under the
key's ceiling. At the ceiling the request is refused WITHOUT incrementing, so a
client hammering a limited key does not push its own reset further out. Once
the window elapses the next request opens a fresh one.

The check and the increment happen under one lock, so concurrent requests for
the same key cannot both slip under the ceiling.

The API key authority depends on the RateLimitStore protocol, not on this
class, so a shared external counter can replace it in multi-process deployments.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    reset_at: datetime

    def retry_after(self, now: datetime) -> int:
        return max(0, int((self.reset_at - now).total_seconds() + 0.999))


class RateLimitStore(Protocol):
    def hit(self, key: str, limit: int) -> RateDecision: ...

    def reset(self, key: str) -> None: ...


@dataclass
class _Window:
    count: int
    reset_at: datetime


class InMemoryRateLimitStore:
    """Process-local RateLimitStore. State is lost on restart."""

    def __init__(self, window_seconds: int = 3600, clock: Callable[[], datetime] | None = None) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive.")
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._windows: dict[str, _Window] = {}

    def hit(self, key: str, limit: int) -> RateDecision:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + self._window)
                self._windows[key] = window
            if window.count >= limit:
                return RateDecision(False, window.count, limit, window.reset_at)
            window.count += 1
            return RateDecision(True, window.count, limit, window.reset_at)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)
