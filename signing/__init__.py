from .base import SignedTransaction, Signer
from .evm import EvmSigner, NonceTracker
from .keys import KeyHandle, KeyResolver

__all__ = ["EvmSigner", "KeyHandle", "KeyResolver", "NonceTracker", "SignedTransaction", "Signer"]
