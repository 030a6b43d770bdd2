"""
Transaction record store.

Every intent produces exactly one `TransactionRecord`, including blocked ones. Records are
append-only from the store's point of view:
- `add()` refuses an id that already exists
- `save()` refuses to move a record backwards (fewer transitions than the stored copy)
- nothing is ever deleted

Optional SQLite persistence is enabled by `TX_DB_PATH` (or `GUARDED_SIGNER_TX_DB_PATH`).
Persisted records survive restarts so the spend ledger can be rebuilt from them.
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from core.models import TransactionRecord


class RecordConflict(Exception):
    pass


class TransactionStore:
    def __init__(self, db_path: Optional[str] = None) -> None:
        # Written by orchestrator worker threads, read by tool handlers.
        self._lock = threading.RLock()
        self._items: Dict[str, TransactionRecord] = {}
        self._conn: Optional[sqlite3.Connection] = None
        self._db_path_override = db_path

    def persistence_enabled(self) -> bool:
        return bool(self._db_path())

    def _db_path(self) -> str:
        if self._db_path_override is not None:
            return self._db_path_override.strip()
        return (os.getenv("GUARDED_SIGNER_TX_DB_PATH") or os.getenv("TX_DB_PATH") or "").strip()

    def _get_conn(self) -> Optional[sqlite3.Connection]:
        path = self._db_path()
        if not path:
            return None
        if self._conn is not None:
            return self._conn
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions(
                id TEXT PRIMARY KEY,
                identity_id TEXT NOT NULL,
                chain TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                record_json TEXT NOT NULL
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_tx_identity ON transactions(identity_id, created_at)")
        self._conn.commit()
        return self._conn

    def _persist(self, r: TransactionRecord) -> None:
        conn = self._get_conn()
        if conn is None:
            return
        conn.execute(
            """
            INSERT INTO transactions(id, identity_id, chain, status, created_at, record_json)
            VALUES(?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              status=excluded.status,
              record_json=excluded.record_json
            """,
            (r.id, r.identity_id, r.chain, r.status, float(r.created_at), json.dumps(r.to_dict(), sort_keys=True)),
        )
        conn.commit()

    def _load(self, record_id: str) -> Optional[TransactionRecord]:
        conn = self._get_conn()
        if conn is None:
            return None
        row = conn.execute("SELECT record_json FROM transactions WHERE id = ?", (record_id,)).fetchone()
        if not row:
            return None
        return TransactionRecord.from_dict(json.loads(row[0]))

    def add(self, record: TransactionRecord) -> TransactionRecord:
        with self._lock:
            if record.id in self._items or self._load(record.id) is not None:
                raise RecordConflict(f"Record already exists: {record.id}")
            self._items[record.id] = record
            self._persist(record)
            return record

    def save(self, record: TransactionRecord) -> TransactionRecord:
        with self._lock:
            current = self._items.get(record.id) or self._load(record.id)
            if current is None:
                raise RecordConflict(f"Unknown record: {record.id}")
            if current is not record and len(record.transitions) < len(current.transitions):
                raise RecordConflict(f"Refusing to rewind record {record.id} ({current.status} -> {record.status})")
            self._items[record.id] = record
            self._persist(record)
            return record

    def get(self, record_id: str) -> Optional[TransactionRecord]:
        with self._lock:
            r = self._items.get(record_id)
            if r is not None:
                return r
            r2 = self._load(record_id)
            if r2 is not None:
                self._items[record_id] = r2
            return r2

    def list(
        self,
        *,
        identity_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[TransactionRecord]:
        """Newest first."""
        with self._lock:
            merged: Dict[str, TransactionRecord] = {}
            conn = self._get_conn()
            if conn is not None:
                q = "SELECT record_json FROM transactions"
                args: List[Any] = []
                if identity_id:
                    q += " WHERE identity_id = ?"
                    args.append(identity_id)
                for (raw,) in conn.execute(q, args).fetchall():
                    r = TransactionRecord.from_dict(json.loads(raw))
                    merged[r.id] = r
            # In-memory objects are authoritative for records touched in this process.
            merged.update(self._items)
            out = [
                r
                for r in merged.values()
                if (not identity_id or r.identity_id == identity_id) and (not status or r.status == status)
            ]
        out.sort(key=lambda r: r.created_at, reverse=True)
        if limit and limit > 0:
            out = out[:limit]
        return out
