from __future__ import annotations

import re
import secrets
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from web3 import Web3

from common.errors import InvalidIntent
from core.chains import get_chain

WEI_DECIMALS = 18
_HEX_RE = re.compile(r"^0x([0-9a-fA-F]{2})*$")


def parse_amount(raw: Any, *, field_name: str = "value") -> Decimal:
    """
    Parse a decimal amount in native units. Floats are refused: "0.1" and 0.1 are not the same number.
    """
    if isinstance(raw, float):
        raise InvalidIntent(f"{field_name} must be a decimal string, not a float.", {field_name: raw})
    try:
        d = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise InvalidIntent(f"{field_name} is not a valid decimal: {raw!r}", {field_name: raw})
    if not d.is_finite() or d < 0:
        raise InvalidIntent(f"{field_name} must be a non-negative finite decimal.", {field_name: str(raw)})
    if d.as_tuple().exponent < -WEI_DECIMALS:
        raise InvalidIntent(
            f"{field_name} has more than {WEI_DECIMALS} decimal places.",
            {field_name: str(raw)},
        )
    return d


def to_wei(amount: Decimal) -> int:
    return int(amount.scaleb(WEI_DECIMALS))


@dataclass(frozen=True)
class TransactionIntent:
    """
    Caller-proposed, unsigned transaction. Immutable once constructed.
    """

    to: str
    value: str
    chain: str
    data: Optional[str] = None
    simulate_first: bool = False
    require_simulation_success: bool = False

    def __post_init__(self) -> None:
        if not self.to or not Web3.is_address(self.to):
            raise InvalidIntent(f"Invalid destination address: {self.to!r}", {"to": self.to})
        parse_amount(self.value)
        info = get_chain(self.chain)
        object.__setattr__(self, "chain", info.name)
        object.__setattr__(self, "value", str(self.value).strip())
        if self.data in ("", "0x"):
            object.__setattr__(self, "data", None)
        if self.data is not None and not _HEX_RE.match(self.data):
            raise InvalidIntent("data must be 0x-prefixed hex calldata.", {"data": self.data[:20]})

    @property
    def value_decimal(self) -> Decimal:
        return parse_amount(self.value)

    @property
    def value_wei(self) -> int:
        return to_wei(self.value_decimal)

    @property
    def chain_id(self) -> int:
        return get_chain(self.chain).chain_id

    def to_request(self) -> Dict[str, Any]:
        """Wire shape for the simulation service."""
        req: Dict[str, Any] = {"to": self.to, "value": self.value, "chain": self.chain}
        if self.data:
            req["data"] = self.data
        return req


@dataclass(frozen=True)
class SimulationResult:
    status: str  # success | reverted | error
    gas_used: Optional[int] = None
    gas_cost_estimate: Optional[str] = None
    balance_changes: List[Dict[str, Any]] = field(default_factory=list)
    revert_reason: Optional[str] = None
    dashboard_url: Optional[str] = None
    simulation_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TxStatus:
    PENDING = "pending"
    BLOCKED = "blocked"
    SIGNED = "signed"
    SIMULATED = "simulated"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    TERMINAL = frozenset({BLOCKED, CONFIRMED, FAILED})


_TRANSITIONS: Dict[str, frozenset] = {
    TxStatus.PENDING: frozenset({TxStatus.BLOCKED, TxStatus.SIGNED, TxStatus.FAILED}),
    TxStatus.SIGNED: frozenset({TxStatus.SIMULATED, TxStatus.BROADCAST, TxStatus.FAILED}),
    TxStatus.SIMULATED: frozenset({TxStatus.BROADCAST, TxStatus.FAILED}),
    TxStatus.BROADCAST: frozenset({TxStatus.CONFIRMED, TxStatus.FAILED}),
}

# Once written these never change. `confirmation` is a poll result and may go unknown -> final.
_WRITE_ONCE = (
    "failure_kind",
    "error_code",
    "error_message",
    "block_rule",
    "block_reason",
    "signed_tx",
    "tx_hash",
    "nonce",
    "from_address",
    "simulation",
)


class FailureKind:
    TIMED_OUT = "timed_out"
    BROADCAST_ERROR = "broadcast_error"
    SIGNING_ERROR = "signing_error"
    KEY_NOT_FOUND = "key_not_found"
    REVERTED = "reverted"
    SIMULATION_GATE = "simulation_gate"
    POLICY_UNAVAILABLE = "policy_unavailable"
    VAULT_ERROR = "vault_error"


@dataclass
class TransactionRecord:
    """
    Persisted outcome of one intent. Append-only: status only moves forward and write-once
    fields are never overwritten.
    """

    id: str
    identity_id: str
    chain: str
    chain_id: int
    to: str
    value: str
    value_wei: str
    data: Optional[str]
    simulate_first: bool
    require_simulation_success: bool
    status: str = TxStatus.PENDING
    created_at: float = field(default_factory=time.time)
    transitions: List[Dict[str, Any]] = field(default_factory=list)
    failure_kind: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    block_rule: Optional[str] = None
    block_reason: Optional[str] = None
    signed_tx: Optional[str] = None
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None
    from_address: Optional[str] = None
    simulation: Optional[Dict[str, Any]] = None
    confirmation: Optional[str] = None

    @classmethod
    def from_intent(cls, intent: TransactionIntent, *, identity_id: str) -> "TransactionRecord":
        now = time.time()
        return cls(
            id="tx_" + secrets.token_hex(12),
            identity_id=identity_id,
            chain=intent.chain,
            chain_id=intent.chain_id,
            to=intent.to,
            value=intent.value,
            value_wei=str(intent.value_wei),
            data=intent.data,
            simulate_first=intent.simulate_first,
            require_simulation_success=intent.require_simulation_success,
            created_at=now,
            transitions=[{"status": TxStatus.PENDING, "at": now}],
        )

    def can_advance(self, status: str) -> bool:
        return status in _TRANSITIONS.get(self.status, frozenset())

    def advance(self, status: str, **fields: Any) -> None:
        if not self.can_advance(status):
            raise ValueError(f"Illegal transition {self.status} -> {status} for {self.id}")
        self.annotate(**fields)
        self.status = status
        self.transitions.append({"status": status, "at": time.time()})

    def annotate(self, **fields: Any) -> None:
        for name, value in fields.items():
            if name not in _WRITE_ONCE and name != "confirmation":
                raise AttributeError(f"{name} is not a mutable record field")
            if name in _WRITE_ONCE and getattr(self, name) is not None:
                raise ValueError(f"{name} already recorded for {self.id}")
            setattr(self, name, value)

    def transitioned_at(self, status: str) -> Optional[float]:
        for t in self.transitions:
            if t["status"] == status:
                return float(t["at"])
        return None

    @property
    def signed_at(self) -> Optional[float]:
        return self.transitioned_at(TxStatus.SIGNED)

    @property
    def value_decimal(self) -> Decimal:
        return Decimal(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TransactionRecord":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in raw.items() if k in known})
