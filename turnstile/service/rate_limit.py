"""Sliding-window attempt counter.

Windows live in this process only. Running several instances multiplies
the effective limit by the instance count; sharing limits across processes
needs a shared counter behind the same ``allow``/``check`` interface.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Dict

from turnstile.logging import get_logger
from turnstile.storage.models import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class SlidingWindowRateLimiter:
    """Counts attempts per key inside a rolling window.

    An attempt at time ``t`` is counted while ``now - t < window``; once a
    key holds ``limit`` counted attempts further attempts are refused and
    not recorded.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._windows_seconds: Dict[str, float] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        return self.check(key, limit, window_seconds).allowed

    def check(self, key: str, limit: int, window_seconds: float) -> RateDecision:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        now = self._clock().timestamp()
        with self._lock:
            window = self._windows.setdefault(key, deque())
            self._windows_seconds[key] = window_seconds
            self._prune(window, now, window_seconds)
            if len(window) >= limit:
                retry_after = max(1, math.ceil(window[0] + window_seconds - now))
                decision = RateDecision(allowed=False, remaining=0, retry_after=retry_after)
            else:
                window.append(now)
                decision = RateDecision(allowed=True, remaining=limit - len(window))
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                scope=key.split(":", 1)[0],
                limit=limit,
                retry_after=decision.retry_after,
            )
        return decision

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)
            self._windows_seconds.pop(key, None)

    def sweep(self) -> int:
        """Prune every window and drop keys left empty; returns keys dropped."""
        now = self._clock().timestamp()
        dropped = 0
        with self._lock:
            for key in list(self._windows):
                window = self._windows[key]
                self._prune(window, now, self._windows_seconds.get(key, 0))
                if not window:
                    del self._windows[key]
                    self._windows_seconds.pop(key, None)
                    dropped += 1
        if dropped:
            logger.debug("rate_limit_sweep", dropped=dropped, remaining=len(self._windows))
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    @staticmethod
    def _prune(window: Deque[float], now: float, window_seconds: float) -> None:
        while window and now - window[0] >= window_seconds:
            window.popleft()
