from __future__ import annotations

import os
import sqlite3
import threading
import time
from typing import Dict, Optional, Tuple


class IdempotencyStore:
    """
    Maps an agent-supplied idempotency key to the transaction record it produced.

    Agents re-invoke tools on ambiguous failures. A second submission with the same key must
    replay the first record instead of signing again, so the orchestrator binds the key
    before any signing happens and looks it up on every submit.

    Keys are scoped per identity: two agents may use the same key without colliding.

    In-memory, with SQLite persistence when `IDEMPOTENCY_DB_PATH`
    (or `GUARDED_SIGNER_IDEMPOTENCY_DB_PATH`) is set.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._mem: Dict[Tuple[str, str], str] = {}
        self._conn: Optional[sqlite3.Connection] = None

    def clear(self) -> None:
        """Drop the in-memory cache. Persisted bindings are kept."""
        with self._lock:
            self._mem.clear()

    def record_for(self, identity_id: str, key: Optional[str]) -> Optional[str]:
        k = _scope(identity_id, key)
        if k is None:
            return None
        with self._lock:
            cached = self._mem.get(k)
        if cached is not None:
            return cached

        conn = self._get_conn()
        if conn is None:
            return None
        with self._lock:
            row = conn.execute(
                "SELECT record_id FROM idempotency_keys WHERE identity_id = ? AND key = ?",
                k,
            ).fetchone()
        if not row or not row[0]:
            return None
        with self._lock:
            self._mem[k] = row[0]
        return row[0]

    def bind(self, identity_id: str, key: Optional[str], record_id: str) -> None:
        """
        Bind a key to a record. Rebinding a key to a different record raises ValueError.
        """
        k = _scope(identity_id, key)
        if k is None:
            return
        if not record_id:
            raise ValueError("record_id is required")
        existing = self.record_for(identity_id, key)
        if existing is not None:
            if existing != record_id:
                raise ValueError(f"Idempotency key already bound to {existing}")
            return

        with self._lock:
            self._mem[k] = record_id

        conn = self._get_conn()
        if conn is None:
            return
        with self._lock:
            conn.execute(
                "INSERT OR IGNORE INTO idempotency_keys(identity_id, key, record_id, created_at_ms) VALUES(?, ?, ?, ?)",
                (k[0], k[1], record_id, int(time.time() * 1000)),
            )
            conn.commit()

    def _db_path(self) -> str:
        p = (os.getenv("GUARDED_SIGNER_IDEMPOTENCY_DB_PATH") or os.getenv("IDEMPOTENCY_DB_PATH") or "").strip()
        if p and os.path.dirname(p):
            os.makedirs(os.path.dirname(p), exist_ok=True)
        return p

    def _get_conn(self) -> Optional[sqlite3.Connection]:
        path = self._db_path()
        if not path:
            return None
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(path, check_same_thread=False)
                self._conn.execute("PRAGMA journal_mode=WAL;")
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS idempotency_keys(
                        identity_id TEXT NOT NULL,
                        key TEXT NOT NULL,
                        record_id TEXT NOT NULL,
                        created_at_ms INTEGER NOT NULL,
                        PRIMARY KEY(identity_id, key)
                    )
                    """
                )
                self._conn.commit()
            return self._conn


def _scope(identity_id: str, key: Optional[str]) -> Optional[Tuple[str, str]]:
    k = (key or "").strip()
    if not k:
        return None
    return str(identity_id), k
