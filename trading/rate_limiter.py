"""Per-user sliding-window limit on automated buy attempts."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable

import config

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BuyRateLimiter:
    """Process-local; attempts are forgotten on restart."""

    def __init__(
        self,
        limit: int | None = None,
        window_seconds: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.limit = max(1, int(limit or config.AUTONOMOUS_HOURLY_BUY_LIMIT))
        self.window = timedelta(seconds=float(window_seconds or config.AUTONOMOUS_RATE_WINDOW_SECONDS))
        self._clock = clock or utc_now
        self._attempts: dict[int, deque[datetime]] = {}
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, user_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def _prune(self, user_id: int, now: datetime) -> deque[datetime]:
        window = self._attempts.get(user_id)
        if window is None:
            return deque()
        cutoff = now - self.window
        while window and window[0] <= cutoff:
            window.popleft()
        if not window:
            self._attempts.pop(user_id, None)
        return window

    def can_attempt(self, user_id: int) -> bool:
        with self._lock(user_id):
            return len(self._prune(user_id, self._clock())) < self.limit

    def record_attempt(self, user_id: int) -> None:
        with self._lock(user_id):
            now = self._clock()
            self._prune(user_id, now)
            self._attempts.setdefault(user_id, deque()).append(now)

    def remaining(self, user_id: int) -> int:
        with self._lock(user_id):
            return max(0, self.limit - len(self._prune(user_id, self._clock())))

    def next_eligible_at(self, user_id: int) -> datetime | None:
        """When the oldest attempt in the window ages out, or None if none are tracked."""
        with self._lock(user_id):
            window = self._prune(user_id, self._clock())
            if not window:
                return None
            return window[0] + self.window
