from __future__ import annotations

import time
from typing import Any, Callable, Optional

import requests
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from common.errors import BroadcastError, classify_exception
from core.chains import get_web3
from observability import log_event
from signing.base import SignedTransaction

CONFIRMED = "confirmed"
PENDING = "pending"
REVERTED = "reverted"


class Web3Broadcaster:
    """
    Submit signed payloads to the chain and poll for receipts.

    Broadcast happens once. There is no automatic rebroadcast and no re-signing: a timed-out
    send may still have reached the mempool, so the caller gets `timed_out=True` and decides.
    """

    def __init__(
        self,
        *,
        web3_factory: Callable[..., Any] = get_web3,
        broadcast_timeout: float = 30.0,
        poll_interval: float = 2.0,
    ) -> None:
        self._web3_factory = web3_factory
        self.broadcast_timeout = float(broadcast_timeout)
        self.poll_interval = float(poll_interval)

    def _w3(self, chain: str, timeout: Optional[float] = None) -> Any:
        return self._web3_factory(chain, timeout=timeout)

    def broadcast(self, signed: SignedTransaction, chain: str) -> str:
        w3 = self._w3(chain, timeout=self.broadcast_timeout)
        try:
            tx_hash = w3.eth.send_raw_transaction(signed.raw_tx)
        except (requests.Timeout, TimeoutError) as e:
            raise BroadcastError(
                f"Broadcast timed out after {self.broadcast_timeout}s; the transaction may still be pending.",
                {"chain": chain, "tx_hash": signed.tx_hash},
                timed_out=True,
            ) from e
        except Exception as e:
            ae = classify_exception(e)
            raise BroadcastError(
                f"Broadcast rejected: {ae.message}",
                {"chain": chain, "tx_hash": signed.tx_hash, "cause": ae.code},
                timed_out=ae.code == "timeout",
            ) from e
        h = tx_hash if isinstance(tx_hash, str) else Web3.to_hex(tx_hash)
        log_event("tx_broadcast", data={"chain": chain, "tx_hash": h, "nonce": signed.nonce})
        return h

    def receipt_status(self, tx_hash: str, chain: str) -> str:
        """One poll: confirmed | reverted | pending."""
        w3 = self._w3(chain)
        try:
            receipt = w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return PENDING
        if receipt is None:
            return PENDING
        status = receipt.get("status") if hasattr(receipt, "get") else getattr(receipt, "status", None)
        return CONFIRMED if int(status or 0) == 1 else REVERTED

    def await_confirmation(self, tx_hash: str, chain: str, timeout: float) -> str:
        """
        Poll until a receipt appears or `timeout` elapses. Returns `pending` on timeout;
        the transaction may still land later.
        """
        deadline = time.monotonic() + max(0.0, float(timeout))
        while True:
            try:
                state = self.receipt_status(tx_hash, chain)
            except TimeExhausted:
                state = PENDING
            except Exception as e:
                log_event(
                    "receipt_poll_error",
                    data={"chain": chain, "tx_hash": tx_hash, "error": str(e)[:200]},
                    level="warn",
                )
                state = PENDING
            if state != PENDING:
                return state
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return PENDING
            time.sleep(min(self.poll_interval, remaining))
