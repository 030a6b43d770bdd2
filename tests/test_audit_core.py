import os
import sqlite3
from unittest.mock import patch

import pytest

from observability.audit import AuditLog


@pytest.fixture
def audit_db(tmp_path):
    db_path = str(tmp_path / "audit" / "test_audit.db")
    with patch.dict(os.environ, {"AUDIT_DB_PATH": db_path}):
        yield AuditLog()


def test_audit_logs_and_verifies(audit_db):
    assert audit_db.enabled()

    audit_db.append(ts_ms=1000, request_id="req1", tool="submit_transaction", ok=True, status="signed", summary={"a": 1})
    audit_db.append(ts_ms=2000, request_id="req2", tool="submit_transaction", ok=False, status="blocked", summary={"a": 2})

    assert audit_db.verify_integrity()

    conn = sqlite3.connect(audit_db._db_path())
    conn.execute("UPDATE audit_events SET status='confirmed' WHERE request_id='req2'")
    conn.commit()
    conn.close()

    assert not audit_db.verify_integrity()


def test_deleting_a_row_breaks_the_chain(audit_db):
    for i in range(3):
        audit_db.append(ts_ms=i, request_id=f"r{i}", tool="submit_transaction", ok=True)
    conn = sqlite3.connect(audit_db._db_path())
    conn.execute("DELETE FROM audit_events WHERE request_id='r1'")
    conn.commit()
    conn.close()
    assert not audit_db.verify_integrity()


def test_export_transactions_csv(audit_db):
    audit_db.append(
        ts_ms=1000,
        request_id="r1",
        tool="submit_transaction",
        ok=True,
        identity_id="agent-1",
        chain="base",
        record_id="tx_1",
        status="confirmed",
        summary={"to": "0xdead", "value": "0.001", "tx_hash": "0xabc"},
    )
    audit_db.append(
        ts_ms=2000,
        request_id="r2",
        tool="submit_transaction",
        ok=False,
        identity_id="agent-1",
        chain="base",
        record_id="tx_2",
        status="blocked",
        summary={"to": "0xbeef", "value": "5"},
    )
    audit_db.append(
        ts_ms=3000,
        request_id="r3",
        tool="submit_transaction",
        ok=True,
        identity_id="agent-2",
        chain="base",
        record_id="tx_3",
        status="signed",
        summary={"to": "0xcafe", "value": "0.002"},
    )

    csv_out = audit_db.export_transactions_csv()
    assert "tx_1" in csv_out
    assert "0xabc" in csv_out
    assert "tx_2" not in csv_out
    assert "tx_3" in csv_out

    only_one = audit_db.export_transactions_csv(identity_id="agent-1")
    assert "tx_1" in only_one
    assert "tx_3" not in only_one


def test_audit_disabled_without_path():
    with patch.dict(os.environ, {"AUDIT_DB_PATH": "", "GUARDED_SIGNER_AUDIT_DB_PATH": ""}):
        log = AuditLog()
        assert not log.enabled()
        log.append(ts_ms=1, request_id="r", tool="t", ok=True)
        assert log.verify_integrity()
