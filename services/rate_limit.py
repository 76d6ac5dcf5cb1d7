"""Per-token fixed window limiter for incoming alert webhooks.

Counts live in process memory, so each worker process enforces its own
budget.
"""

from __future__ import annotations

import os
import threading
import time
from typing import Callable, Dict, Tuple

WEBHOOK_RATE_LIMIT = int(os.environ.get("WEBHOOK_RATE_LIMIT", "5"))
WEBHOOK_RATE_WINDOW = float(os.environ.get("WEBHOOK_RATE_WINDOW", "60"))


class _FixedWindowLimiter:
    """Allow ``calls`` requests per key in each ``period`` second window.

    A window opens with the first request for a key and the key's count
    resets on the first request after the window has elapsed.
    """

    def __init__(
        self,
        calls: int,
        period: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.calls = calls
        self.period = period
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Record a request for ``key`` and report whether it is allowed."""

        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                self._windows[key] = (1, now + self.period)
                return True
            if count >= self.calls:
                return False
            self._windows[key] = (count + 1, reset_at)
            return True

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


webhook_limiter = _FixedWindowLimiter(WEBHOOK_RATE_LIMIT, WEBHOOK_RATE_WINDOW)

__all__ = ["webhook_limiter", "WEBHOOK_RATE_LIMIT", "WEBHOOK_RATE_WINDOW"]
