from __future__ import annotations

import csv
import hashlib
import io
import json
import os
import sqlite3
import threading
import time
from typing import Any, Dict, Optional


class AuditLog:
    """
    Optional SQLite audit log of orchestrator outcomes.

    OFF by default. Enable by setting `AUDIT_DB_PATH` (or `GUARDED_SIGNER_AUDIT_DB_PATH`).

    Each row carries the hash of the previous row so tampering with history is detectable via
    `verify_integrity()`. Rows hold a summary only: never signed payloads or key material.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

    def enabled(self) -> bool:
        return bool(self._db_path())

    def append(
        self,
        *,
        ts_ms: int,
        request_id: str,
        tool: str,
        ok: bool,
        error_code: str | None = None,
        identity_id: str | None = None,
        chain: str | None = None,
        record_id: str | None = None,
        status: str | None = None,
        summary: Dict[str, Any] | None = None,
    ) -> None:
        conn = self._get_conn()
        if conn is None:
            return

        payload = self._serialize_payload(summary)

        with self._lock:
            row = conn.execute("SELECT hash FROM audit_events ORDER BY id DESC LIMIT 1").fetchone()
            prev_hash = row[0] if row else "INITIAL_HASH"
            current_hash = self._hash(prev_hash, ts_ms, request_id, tool, 1 if ok else 0, status, payload)
            conn.execute(
                """
                INSERT INTO audit_events(
                    ts_ms, request_id, tool, ok, error_code, identity_id, chain, record_id, status,
                    summary_json, hash, previous_hash
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(ts_ms),
                    str(request_id),
                    str(tool),
                    1 if ok else 0,
                    error_code,
                    identity_id,
                    chain,
                    record_id,
                    status,
                    payload,
                    current_hash,
                    prev_hash,
                ),
            )
            conn.commit()

    def verify_integrity(self) -> bool:
        """
        Recompute the hash chain over every row.
        """
        conn = self._get_conn()
        if conn is None:
            return True

        with self._lock:
            rows = conn.execute(
                "SELECT ts_ms, request_id, tool, ok, status, summary_json, hash, previous_hash "
                "FROM audit_events ORDER BY id ASC"
            ).fetchall()

        last_hash = "INITIAL_HASH"
        for ts_ms, req_id, tool, ok, status, summary, cur_hash, prev_hash in rows:
            if prev_hash != last_hash:
                return False
            if self._hash(prev_hash, ts_ms, req_id, tool, ok, status, summary) != cur_hash:
                return False
            last_hash = cur_hash
        return True

    def export_transactions_csv(self, *, identity_id: str | None = None) -> str:
        """
        CSV of every audited transaction that reached a signature (signed or later).
        """
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(["Timestamp (ISO)", "Identity", "Chain", "Record", "Status", "To", "Value", "TxHash"])

        conn = self._get_conn()
        if conn is None:
            return output.getvalue()

        query = (
            "SELECT ts_ms, identity_id, chain, record_id, status, summary_json FROM audit_events "
            "WHERE ok=1 AND status IN ('signed', 'simulated', 'broadcast', 'confirmed')"
        )
        params: tuple = ()
        if identity_id:
            query += " AND identity_id = ?"
            params = (identity_id,)
        query += " ORDER BY ts_ms ASC"

        with self._lock:
            rows = conn.execute(query, params).fetchall()

        for ts_ms, ident, chain, record_id, status, summary_str in rows:
            try:
                data = json.loads(summary_str)
            except ValueError:
                data = {}
            iso_time = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(ts_ms / 1000))
            writer.writerow(
                [iso_time, ident, chain, record_id, status, data.get("to"), data.get("value"), data.get("tx_hash") or ""]
            )
        return output.getvalue()

    @staticmethod
    def _hash(prev_hash: str, ts_ms: int, request_id: str, tool: str, ok: int, status: str | None, payload: str) -> str:
        data_to_hash = f"{prev_hash}|{ts_ms}|{request_id}|{tool}|{ok}|{status or ''}|{payload}"
        return hashlib.sha256(data_to_hash.encode()).hexdigest()

    def _serialize_payload(self, summary: Dict[str, Any] | None) -> str:
        # compact separators keep the hash stable across environments
        return json.dumps(summary or {}, sort_keys=True, separators=(",", ":"), default=str)

    def _db_path(self) -> str:
        p = (os.getenv("GUARDED_SIGNER_AUDIT_DB_PATH") or os.getenv("AUDIT_DB_PATH") or "").strip()
        if p and os.path.dirname(p) and not os.path.exists(os.path.dirname(p)):
            try:
                os.makedirs(os.path.dirname(p), exist_ok=True)
            except OSError:
                return ""
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
                    CREATE TABLE IF NOT EXISTS audit_events(
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        ts_ms INTEGER NOT NULL,
                        request_id TEXT NOT NULL,
                        tool TEXT NOT NULL,
                        ok INTEGER NOT NULL,
                        error_code TEXT,
                        identity_id TEXT,
                        chain TEXT,
                        record_id TEXT,
                        status TEXT,
                        summary_json TEXT NOT NULL,
                        hash TEXT NOT NULL,
                        previous_hash TEXT NOT NULL
                    )
                    """
                )
                self._conn.commit()
            return self._conn


def now_ms() -> int:
    return int(time.time() * 1000)
