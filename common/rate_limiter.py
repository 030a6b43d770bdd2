from __future__ import annotations

import threading
import time
from typing import Dict, Tuple

from common.errors import AppError


class RateLimitError(AppError):
    def __init__(self, message: str, data: Dict[str, object]):
        super().__init__("rate_limited", message, dict(data))


class FixedWindowRateLimiter:
    """
    Fixed-window limiter: max N events per window_seconds per key.

    Keys are usually `<tool>:<identity_id>` so one noisy agent cannot starve another.
    In-memory only (resets on restart).
    """

    def __init__(self) -> None:
        # key -> (window_start_epoch_sec, count)
        self._lock = threading.Lock()
        self._state: Dict[str, Tuple[int, int]] = {}

    def check(self, *, key: str, limit: int, window_seconds: int = 60) -> None:
        if limit <= 0:
            return
        with self._lock:
            now = int(time.time())
            window_start = now - (now % window_seconds)
            prev = self._state.get(key)
            if not prev or prev[0] != window_start:
                self._state[key] = (window_start, 1)
                return
            count = prev[1] + 1
            self._state[key] = (window_start, count)
            if count > limit:
                raise RateLimitError(
                    "Rate limit exceeded.",
                    {"key": key, "limit": limit, "window_seconds": window_seconds, "count": count},
                )

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._state.clear()
            else:
                self._state.pop(key, None)
