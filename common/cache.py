from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """
    In-memory TTL cache for short-lived vault artefacts (agent tokens, guardrail snapshots).

    Never used for key material: private keys are fetched per signing call and dropped.
    """

    def __init__(self, *, max_items: int = 256) -> None:
        # Shared by MCP tool handlers and API worker threads.
        self._lock = threading.RLock()
        self._max_items = max(1, int(max_items))
        self._data: Dict[K, _Entry[V]] = {}

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            e = self._data.get(key)
            if not e:
                return None
            if e.expires_at <= time.time():
                self._data.pop(key, None)
                return None
            return e.value

    def set(self, key: K, value: V, ttl_seconds: float) -> None:
        with self._lock:
            ttl = max(0.0, float(ttl_seconds))
            # dicts keep insertion order; re-insert so eviction stays oldest-first
            self._data.pop(key, None)
            self._data[key] = _Entry(value=value, expires_at=time.time() + ttl)
            while len(self._data) > self._max_items:
                oldest = next(iter(self._data))
                self._data.pop(oldest, None)

    def get_or_set(self, key: K, factory: Callable[[], V], ttl_seconds: float) -> V:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = factory()
        self.set(key, value, ttl_seconds)
        return value

    def delete(self, key: K) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
