from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Tuple

# (metric name, sorted label pairs)
_Key = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass
class _TimerAgg:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def observe(self, ms: float) -> None:
        self.count += 1
        self.total_ms += ms
        self.max_ms = max(self.max_ms, ms)

    def as_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 3),
            "avg_ms": round(self.total_ms / self.count, 3) if self.count else 0.0,
            "max_ms": round(self.max_ms, 3),
        }


def _key(name: str, labels: Dict[str, Any]) -> _Key:
    return name, tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def series_name(key: _Key) -> str:
    """`name` or `name{a="x",b="y"}`, the same spelling Prometheus uses."""
    name, labels = key
    if not labels:
        return name
    return name + "{" + ",".join(f'{k}="{v}"' for k, v in labels) + "}"


class Metrics:
    """
    In-memory metrics registry with optional labels.

    Exposed via the `get_metrics` MCP tool (JSON snapshot) and `/metrics` (Prometheus text).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[_Key, int] = {}
        self._timers: Dict[_Key, _TimerAgg] = {}
        self._gauges: Dict[_Key, float] = {}
        self._started_at = time.time()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        k = _key(name, labels)
        with self._lock:
            self._counters[k] = self._counters.get(k, 0) + int(value)

    def observe_ms(self, name: str, ms: float, **labels: Any) -> None:
        k = _key(name, labels)
        with self._lock:
            self._timers.setdefault(k, _TimerAgg()).observe(float(ms))

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        with self._lock:
            self._gauges[_key(name, labels)] = float(value)

    def counter(self, name: str, **labels: Any) -> int:
        with self._lock:
            return self._counters.get(_key(name, labels), 0)

    def record_outcome(self, *, chain: str, status: str) -> None:
        """Final (or latest) status of one intent: blocked, failed, broadcast, confirmed."""
        self.inc("tx_outcomes_total", chain=chain, status=status)

    def record_denial(self, rule: str) -> None:
        self.inc("guardrail_denials_total", rule=rule)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            counters = {series_name(k): v for k, v in self._counters.items()}
            timers = {series_name(k): v.as_dict() for k, v in self._timers.items()}
            gauges = {series_name(k): round(v, 6) for k, v in self._gauges.items()}
        return {
            "uptime_sec": int(time.time() - self._started_at),
            "counters": counters,
            "timers": timers,
            "gauges": gauges,
        }
