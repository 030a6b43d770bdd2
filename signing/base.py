from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.models import TransactionIntent
from signing.keys import KeyHandle


@dataclass(frozen=True)
class SignedTransaction:
    raw_tx: str  # 0x-prefixed RLP envelope
    tx_hash: str
    nonce: int
    from_address: str
    chain_id: int
    gas: int
    fee_fields: Dict[str, int]

    def summary(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "nonce": self.nonce,
            "from": self.from_address,
            "chain_id": self.chain_id,
            "gas": self.gas,
            **{k: str(v) for k, v in self.fee_fields.items()},
        }


class Signer(ABC):
    """
    Interface for transaction signers.
    """

    @abstractmethod
    def sign(self, handle: KeyHandle, intent: TransactionIntent, nonce_hint: Optional[int] = None) -> SignedTransaction:
        """Consume `handle` and return a chain-ready signed transaction."""
        pass

    @abstractmethod
    def release_nonce(self, signed: SignedTransaction) -> None:
        """Give back a reserved nonce for a transaction that will never be broadcast."""
        pass
