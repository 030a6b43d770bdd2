"""
Caller-facing request and result shapes.

Every operation answers with exactly one of `Blocked`, `Error` or `Ok`, discriminated by
`status`. Blocked is a guardrail working as intended; Error is anything else that stopped the
request (with a stable `kind`).
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from common.errors import AppError, GuardrailDenied
from core.chains import explorer_url
from core.models import SimulationResult, TransactionIntent, TransactionRecord, TxStatus


class IntentRequest(BaseModel):
    to: str
    value: str
    chain: str = "base"
    data: Optional[str] = None
    simulate_first: bool = False
    require_simulation_success: bool = False
    idempotency_key: Optional[str] = None

    def to_intent(self) -> TransactionIntent:
        return TransactionIntent(
            to=self.to,
            value=self.value,
            chain=self.chain,
            data=self.data,
            simulate_first=self.simulate_first,
            require_simulation_success=self.require_simulation_success,
        )


class TransactionView(BaseModel):
    id: str
    chain: str
    chain_id: int
    to: str
    value: str
    value_wei: str
    tx_status: str
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    simulation_status: Optional[str] = None
    dashboard_url: Optional[str] = None
    revert_reason: Optional[str] = None
    signed_at: Optional[float] = None
    confirmation: Optional[str] = None
    failure_kind: Optional[str] = None

    @classmethod
    def from_record(cls, r: TransactionRecord) -> "TransactionView":
        sim = r.simulation or {}
        # Explorer links only once the hash is public.
        public = r.status in (TxStatus.BROADCAST, TxStatus.CONFIRMED) or r.failure_kind in ("reverted", "timed_out")
        return cls(
            id=r.id,
            chain=r.chain,
            chain_id=r.chain_id,
            to=r.to,
            value=r.value,
            value_wei=r.value_wei,
            tx_status=r.status,
            tx_hash=r.tx_hash,
            explorer_url=explorer_url(r.chain, r.tx_hash) if public else None,
            simulation_status=sim.get("status"),
            dashboard_url=sim.get("dashboard_url"),
            revert_reason=sim.get("revert_reason"),
            signed_at=r.signed_at,
            confirmation=r.confirmation,
            failure_kind=r.failure_kind,
        )


class Blocked(BaseModel):
    status: Literal["blocked"] = "blocked"
    reason: str
    rule: str


class Error(BaseModel):
    status: Literal["error"] = "error"
    reason: str
    kind: str
    transaction: Optional[TransactionView] = None


class Ok(BaseModel):
    status: Literal["ok"] = "ok"
    transaction: TransactionView


class SimulationOk(BaseModel):
    status: Literal["ok"] = "ok"
    simulation: Dict[str, Any]


class TransactionList(BaseModel):
    status: Literal["ok"] = "ok"
    transactions: List[TransactionView] = Field(default_factory=list)


SubmitResult = Union[Blocked, Error, Ok]
SimulateResult = Union[Blocked, Error, SimulationOk]


def result_from_record(r: TransactionRecord) -> SubmitResult:
    if r.status == TxStatus.BLOCKED:
        return Blocked(reason=r.block_reason or "Blocked by guardrails", rule=r.block_rule or "unknown")
    if r.status == TxStatus.FAILED:
        return Error(
            reason=r.error_message or "Transaction failed",
            kind=r.failure_kind or r.error_code or "unknown_error",
            transaction=TransactionView.from_record(r),
        )
    return Ok(transaction=TransactionView.from_record(r))


def result_from_error(e: AppError) -> Union[Blocked, Error]:
    if isinstance(e, GuardrailDenied):
        return Blocked(reason=e.message, rule=e.rule)
    return Error(reason=e.message, kind=e.code)


def result_from_simulation(sim: SimulationResult) -> SimulationOk:
    return SimulationOk(simulation=sim.to_dict())
