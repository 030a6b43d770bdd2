"""
Per-identity spend ledger backing the daily limit.

Entries are charged when a transaction is signed (not when it confirms), so a burst of
in-flight transactions cannot overshoot the limit while waiting on the chain.

Window modes:
- `rolling`: sum of charges in the trailing `window_seconds` (default 24h)
- `calendar_day`: sum of charges since 00:00 UTC of the current day
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, Optional

from core.models import FailureKind, TransactionRecord, TxStatus

WINDOW_ROLLING = "rolling"
WINDOW_CALENDAR_DAY = "calendar_day"
_MODES = (WINDOW_ROLLING, WINDOW_CALENDAR_DAY)

# Failed records keep their charge when the signed payload may have reached the chain.
_CHARGED_STATUSES = frozenset({TxStatus.SIGNED, TxStatus.SIMULATED, TxStatus.BROADCAST, TxStatus.CONFIRMED})
_CHARGED_FAILURES = frozenset({FailureKind.TIMED_OUT, FailureKind.BROADCAST_ERROR, FailureKind.REVERTED})


@dataclass(frozen=True)
class SpendEntry:
    record_id: str
    value: Decimal
    at: float


class SpendLedger:
    def __init__(self, *, window_mode: str = WINDOW_ROLLING, window_seconds: int = 86400) -> None:
        mode = (window_mode or WINDOW_ROLLING).strip().lower()
        if mode not in _MODES:
            raise ValueError(f"Unknown spend window mode: {window_mode} (expected one of {_MODES})")
        if int(window_seconds) <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_mode = mode
        self.window_seconds = int(window_seconds)
        self._lock = threading.Lock()
        self._entries: Dict[str, SpendEntry] = {}

    def window_start(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else float(now)
        if self.window_mode == WINDOW_CALENDAR_DAY:
            day = datetime.fromtimestamp(now, tz=timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
            return day.timestamp()
        return now - self.window_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def recent_spend(self, now: Optional[float] = None) -> Decimal:
        start = self.window_start(now)
        with self._lock:
            self._drop_before(start)
            return sum((e.value for e in self._entries.values() if e.at > start), Decimal("0"))

    def charge(self, record_id: str, value: Decimal, at: Optional[float] = None) -> None:
        with self._lock:
            if record_id in self._entries:
                raise ValueError(f"Record already charged: {record_id}")
            entry = SpendEntry(record_id=record_id, value=Decimal(value), at=time.time() if at is None else float(at))
            self._drop_before(self.window_start(entry.at))
            self._entries[record_id] = entry

    def release(self, record_id: str) -> bool:
        """Undo a charge whose transaction never left the process."""
        with self._lock:
            return self._entries.pop(record_id, None) is not None

    def _drop_before(self, start: float) -> int:
        # Caller holds the lock. Charges at or before `start` can never count again.
        stale = [rid for rid, e in self._entries.items() if e.at <= start]
        for rid in stale:
            del self._entries[rid]
        return len(stale)

    def rebuild(self, records: Iterable[TransactionRecord]) -> int:
        """Re-derive charges from persisted records (e.g. after a restart)."""
        n = 0
        with self._lock:
            self._entries.clear()
            for r in records:
                if r.signed_at is None:
                    continue
                if r.status not in _CHARGED_STATUSES and r.failure_kind not in _CHARGED_FAILURES:
                    continue
                self._entries[r.id] = SpendEntry(record_id=r.id, value=r.value_decimal, at=float(r.signed_at))
                n += 1
        return n
