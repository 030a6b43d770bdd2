from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional, Tuple

from eth_account import Account
from web3 import Web3

from common.errors import AppError, SigningError, classify_exception
from core.chains import get_web3
from core.models import TransactionIntent
from observability import log_event
from signing.base import SignedTransaction, Signer
from signing.keys import KeyHandle

PLAIN_TRANSFER_GAS = 21000
CONTRACT_CALL_GAS_FALLBACK = 200000
GAS_BUFFER_NUM, GAS_BUFFER_DEN = 12, 10
DEFAULT_PRIORITY_FEE_WEI = Web3.to_wei(1, "gwei")


class NonceTracker:
    """
    Per (chain_id, address) nonce coordination.

    The chain's pending count lags behind transactions we have signed but not yet broadcast,
    so the next nonce is `max(pending_count, last_reserved + 1)`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: Dict[Tuple[int, str], int] = {}

    def reserve(self, chain_id: int, address: str, pending_count: int) -> int:
        key = (int(chain_id), address.lower())
        with self._lock:
            last = self._last.get(key)
            nonce = int(pending_count) if last is None else max(int(pending_count), last + 1)
            self._last[key] = nonce
            return nonce

    def release(self, chain_id: int, address: str, nonce: int) -> bool:
        """Roll back the most recent reservation. Older reservations are left alone."""
        key = (int(chain_id), address.lower())
        with self._lock:
            if self._last.get(key) != int(nonce):
                return False
            if nonce <= 0:
                del self._last[key]
            else:
                self._last[key] = int(nonce) - 1
            return True

    def peek(self, chain_id: int, address: str) -> Optional[int]:
        with self._lock:
            return self._last.get((int(chain_id), address.lower()))


class EvmSigner(Signer):
    def __init__(
        self,
        *,
        web3_factory: Callable[[str], Any] = get_web3,
        nonces: Optional[NonceTracker] = None,
    ) -> None:
        self._web3_factory = web3_factory
        self.nonces = nonces or NonceTracker()

    def sign(self, handle: KeyHandle, intent: TransactionIntent, nonce_hint: Optional[int] = None) -> SignedTransaction:
        material = handle.consume()
        try:
            account = Account.from_key(material)
        except Exception:
            # Never echo the underlying error: it may quote the key.
            raise SigningError("Key material is not a valid secp256k1 private key", {"key_path": handle.key_path}) from None

        chain_id = intent.chain_id
        from_address = account.address
        to_address = Web3.to_checksum_address(intent.to)

        try:
            w3 = self._web3_factory(intent.chain)
            pending = int(w3.eth.get_transaction_count(from_address, "pending"))
        except Exception as e:
            ae = classify_exception(e)
            raise SigningError(f"Could not read account nonce: {ae.message}", {"chain": intent.chain, "cause": ae.code}) from e
        if nonce_hint is not None:
            pending = max(pending, int(nonce_hint))

        nonce = self.nonces.reserve(chain_id, from_address, pending)
        try:
            tx: Dict[str, Any] = {
                "chainId": chain_id,
                "nonce": nonce,
                "to": to_address,
                "value": intent.value_wei,
            }
            if intent.data:
                tx["data"] = intent.data
            tx["gas"] = self._gas_limit(w3, intent, from_address, tx)
            fee_fields = self._fee_fields(w3)
            tx.update(fee_fields)

            signed = account.sign_transaction(tx)
        except AppError:
            self.nonces.release(chain_id, from_address, nonce)
            raise
        except Exception as e:
            self.nonces.release(chain_id, from_address, nonce)
            ae = classify_exception(e)
            raise SigningError(f"Could not sign transaction: {ae.message}", {"chain": intent.chain, "cause": ae.code}) from e

        result = SignedTransaction(
            raw_tx=Web3.to_hex(signed.raw_transaction),
            tx_hash=Web3.to_hex(signed.hash),
            nonce=nonce,
            from_address=from_address,
            chain_id=chain_id,
            gas=int(tx["gas"]),
            fee_fields={k: int(v) for k, v in fee_fields.items()},
        )
        log_event(
            "tx_signed",
            data={"chain": intent.chain, "from": from_address, "nonce": nonce, "tx_hash": result.tx_hash},
        )
        return result

    def release_nonce(self, signed: SignedTransaction) -> None:
        self.nonces.release(signed.chain_id, signed.from_address, signed.nonce)

    def _gas_limit(self, w3: Any, intent: TransactionIntent, from_address: str, tx: Dict[str, Any]) -> int:
        call = {"from": from_address, "to": tx["to"], "value": tx["value"]}
        if intent.data:
            call["data"] = intent.data
        try:
            estimate = int(w3.eth.estimate_gas(call))
        except Exception as e:
            fallback = CONTRACT_CALL_GAS_FALLBACK if intent.data else PLAIN_TRANSFER_GAS
            log_event(
                "gas_estimate_failed",
                data={"chain": intent.chain, "fallback_gas": fallback, "error": str(e)[:200]},
                level="warn",
            )
            return fallback
        if not intent.data:
            return max(estimate, PLAIN_TRANSFER_GAS)
        return estimate * GAS_BUFFER_NUM // GAS_BUFFER_DEN

    def _fee_fields(self, w3: Any) -> Dict[str, int]:
        """EIP-1559 fees when the chain reports a base fee, legacy gasPrice otherwise."""
        block = w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas") if hasattr(block, "get") else None
        if base_fee is None:
            return {"gasPrice": int(w3.eth.gas_price)}
        try:
            priority = int(w3.eth.max_priority_fee)
        except Exception:
            priority = int(DEFAULT_PRIORITY_FEE_WEI)
        return {
            "maxFeePerGas": int(base_fee) * 2 + priority,
            "maxPriorityFeePerGas": priority,
        }
