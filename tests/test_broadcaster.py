from unittest.mock import MagicMock

import pytest
import requests
from web3.exceptions import TransactionNotFound

from common.errors import BroadcastError
from execution.broadcaster import CONFIRMED, PENDING, REVERTED, Web3Broadcaster
from signing.base import SignedTransaction


def _signed():
    return SignedTransaction(
        raw_tx="0x02f8",
        tx_hash="0x" + "ab" * 32,
        nonce=1,
        from_address="0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
        chain_id=8453,
        gas=21000,
        fee_fields={"gasPrice": 1},
    )


def _broadcaster(w3, **kw):
    return Web3Broadcaster(web3_factory=lambda chain, timeout=None: w3, **kw)


def test_broadcast_returns_hex_hash():
    w3 = MagicMock()
    w3.eth.send_raw_transaction.return_value = bytes.fromhex("ab" * 32)
    assert _broadcaster(w3).broadcast(_signed(), "base") == "0x" + "ab" * 32
    w3.eth.send_raw_transaction.assert_called_once_with("0x02f8")


def test_broadcast_timeout_flagged():
    w3 = MagicMock()
    w3.eth.send_raw_transaction.side_effect = requests.Timeout("read timed out")
    with pytest.raises(BroadcastError) as e:
        _broadcaster(w3).broadcast(_signed(), "base")
    assert e.value.timed_out is True
    assert w3.eth.send_raw_transaction.call_count == 1


def test_broadcast_rejection_not_timed_out():
    w3 = MagicMock()
    w3.eth.send_raw_transaction.side_effect = ValueError({"message": "insufficient funds for gas * price + value"})
    with pytest.raises(BroadcastError) as e:
        _broadcaster(w3).broadcast(_signed(), "base")
    assert e.value.timed_out is False
    assert e.value.code == "broadcast_error"


def test_receipt_status_mapping():
    w3 = MagicMock()
    b = _broadcaster(w3)
    w3.eth.get_transaction_receipt.return_value = {"status": 1}
    assert b.receipt_status("0x1", "base") == CONFIRMED
    w3.eth.get_transaction_receipt.return_value = {"status": 0}
    assert b.receipt_status("0x1", "base") == REVERTED
    w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("nope")
    assert b.receipt_status("0x1", "base") == PENDING


def test_await_confirmation_times_out_as_pending(monkeypatch):
    w3 = MagicMock()
    w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("nope")
    monkeypatch.setattr("execution.broadcaster.time.sleep", lambda s: None)
    assert _broadcaster(w3, poll_interval=0.01).await_confirmation("0x1", "base", timeout=0.05) == PENDING


def test_await_confirmation_polls_until_receipt(monkeypatch):
    w3 = MagicMock()
    w3.eth.get_transaction_receipt.side_effect = [TransactionNotFound("x"), None, {"status": 1}]
    monkeypatch.setattr("execution.broadcaster.time.sleep", lambda s: None)
    assert _broadcaster(w3, poll_interval=0.01).await_confirmation("0x1", "base", timeout=30) == CONFIRMED
