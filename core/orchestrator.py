"""
Transaction orchestrator.

One intent runs through a fixed pipeline:

    guardrails -> key resolution -> signing -> [simulation] -> broadcast -> [confirmation]

Ordering rules:
- No key is resolved and nothing is signed until guardrail evaluation returns Allow.
- Per identity, "recent spend -> evaluate -> resolve -> sign -> ledger charge" runs under the
  identity's lock. Different identities never share a lock.
- The lock is released before advisory simulation, broadcast and confirmation polling.
- When the intent sets `require_simulation_success`, the gating simulation runs inside the
  lock so that a failed gate can roll back the nonce and the ledger charge.
- Nothing after a signature exists is retried automatically.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Set

from common.errors import (
    AppError,
    BroadcastError,
    ConfirmationTimeout,
    GuardrailDenied,
    KeyNotFound,
    SimulationUnavailable,
    classify_exception,
)
from common.idempotency import IdempotencyStore
from core.identities import IdentityRegistry, SigningIdentity
from core.models import FailureKind, SimulationResult, TransactionIntent, TransactionRecord, TxStatus
from core.policy import Deny, Rule, evaluate
from execution.broadcaster import CONFIRMED, PENDING, REVERTED
from execution.store import TransactionStore
from observability import AuditLog, Metrics, log_event, now_ms
from observability.logging import get_current_context
from signing.base import SignedTransaction


class TransactionOrchestrator:
    def __init__(
        self,
        *,
        identities: IdentityRegistry,
        resolver: Any,
        signer: Any,
        simulator: Any,
        broadcaster: Any,
        store: Optional[TransactionStore] = None,
        idempotency: Optional[IdempotencyStore] = None,
        metrics: Optional[Metrics] = None,
        audit: Optional[AuditLog] = None,
        wait_for_confirmation: bool = True,
        confirmation_timeout: float = 60.0,
        executor: Any = None,
        policy_source: Optional[Callable[[SigningIdentity], Any]] = None,
    ) -> None:
        self.identities = identities
        self.resolver = resolver
        self.signer = signer
        self.simulator = simulator
        self.broadcaster = broadcaster
        self.store = store or TransactionStore()
        self.idempotency = idempotency or IdempotencyStore()
        self.metrics = metrics or Metrics()
        self.audit = audit or AuditLog()
        self.wait_for_confirmation = bool(wait_for_confirmation)
        self.confirmation_timeout = float(confirmation_timeout)
        self._executor = executor
        # Called before every evaluation to pull externally owned guardrails onto the identity.
        self.policy_source = policy_source
        # Signed transactions waiting for the post-sign stage, by record id.
        self._in_flight: Dict[str, SignedTransaction] = {}
        self._cancelled: Set[str] = set()
        self._state_lock = threading.Lock()

    # ---- submission -------------------------------------------------------------------------

    def submit(
        self,
        identity_id: str,
        intent: TransactionIntent,
        *,
        idempotency_key: Optional[str] = None,
        wait: bool = True,
    ) -> TransactionRecord:
        """
        Run an intent through the pipeline and return its record.

        Blocked and failed outcomes are returned as records, not raised. Only problems that
        occur before a record exists (unknown identity) raise.

        With `wait=False` the call returns once the transaction is signed; simulation,
        broadcast and confirmation continue on a worker thread.
        """
        started = time.time()
        ident = self.identities.get(identity_id)
        self.metrics.inc("intents_total")

        with ident.lock:
            seen = self.idempotency.record_for(identity_id, idempotency_key)
            if seen is not None:
                prior = self.store.get(seen)
                if prior is None:
                    # Bound to a record this process cannot see; signing again could double spend.
                    raise AppError(
                        "idempotency_conflict",
                        "Idempotency key was already used but its transaction record is unavailable.",
                        {"identity_id": identity_id, "record_id": seen},
                    )
                self.metrics.inc("idempotent_replays_total")
                log_event("idempotent_replay", data={"identity_id": identity_id, "record_id": prior.id})
                return prior

            record = self.store.add(TransactionRecord.from_intent(intent, identity_id=identity_id))
            self.idempotency.bind(identity_id, idempotency_key, record.id)
            signed = self._guard_and_sign(ident, intent, record)

        if signed is None:
            self._finish(record, started)
            return record

        with self._state_lock:
            self._in_flight[record.id] = signed
        if wait or self._executor is None:
            self._after_sign(ident, intent, record, started)
        else:
            future = self._executor.submit(self._after_sign, ident, intent, record, started)
            future.add_done_callback(lambda f, rid=record.id: _log_pipeline_error(f, rid))
        return record

    def _guard_and_sign(
        self,
        ident: SigningIdentity,
        intent: TransactionIntent,
        record: TransactionRecord,
    ) -> Optional[SignedTransaction]:
        """Critical section. Caller holds `ident.lock`. Returns None when the record is terminal."""
        try:
            self._sync_policy(ident)
        except AppError as e:
            # Fail closed: the owner's guardrails could not be read.
            self._fail(record, FailureKind.POLICY_UNAVAILABLE, e)
            return None

        if not ident.intents_enabled:
            self._block(record, Deny(rule=Rule.INTENTS_DISABLED, reason="Transaction intents are disabled for this identity."))
            return None

        policy = ident.policy
        recent = ident.ledger.recent_spend()
        decision = evaluate(intent, policy, recent)
        if isinstance(decision, Deny):
            self._block(record, decision)
            return None

        try:
            handle = self.resolver.resolve(ident, intent.chain)
        except KeyNotFound as e:
            self._fail(record, FailureKind.KEY_NOT_FOUND, e)
            return None
        except AppError as e:
            self._fail(record, FailureKind.KEY_NOT_FOUND if e.code == "not_found" else FailureKind.VAULT_ERROR, e)
            return None

        try:
            signed = self.signer.sign(handle, intent)
        except AppError as e:
            self._fail(record, FailureKind.SIGNING_ERROR, e)
            return None

        record.advance(
            TxStatus.SIGNED,
            signed_tx=signed.raw_tx,
            tx_hash=signed.tx_hash,
            nonce=signed.nonce,
            from_address=signed.from_address,
        )
        ident.ledger.charge(record.id, intent.value_decimal, at=record.signed_at)
        self.store.save(record)

        if intent.require_simulation_success:
            gate_error = self._simulation_gate(ident, intent, record)
            if gate_error is not None:
                self.signer.release_nonce(signed)
                ident.ledger.release(record.id)
                self._fail(record, FailureKind.SIMULATION_GATE, gate_error)
                return None
        return signed

    def _sync_policy(self, ident: SigningIdentity) -> None:
        if self.policy_source is None:
            return
        try:
            self.policy_source(ident)
        except AppError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

    def _simulation_gate(self, ident: SigningIdentity, intent: TransactionIntent, record: TransactionRecord) -> Optional[AppError]:
        try:
            sim = self.simulator.simulate(intent, ident.identity_id)
        except SimulationUnavailable as e:
            record.annotate(simulation={"status": "unavailable", "error": e.message})
            return e
        record.annotate(simulation=_simulation_summary(sim))
        if not sim.succeeded:
            return AppError(
                "simulation_failed",
                f"Simulation {sim.status}: {sim.revert_reason or 'no reason given'}",
                {"simulation_status": sim.status, "dashboard_url": sim.dashboard_url},
            )
        record.advance(TxStatus.SIMULATED)
        self.store.save(record)
        return None

    def _after_sign(self, ident: SigningIdentity, intent: TransactionIntent, record: TransactionRecord, started: float) -> None:
        try:
            if intent.simulate_first and record.status == TxStatus.SIGNED:
                self._advisory_simulation(ident, intent, record)
            with self._state_lock:
                signed = self._in_flight.pop(record.id)
                self._cancelled.discard(record.id)
            self._broadcast(intent, record, signed)
        finally:
            self._finish(record, started)

    def _advisory_simulation(self, ident: SigningIdentity, intent: TransactionIntent, record: TransactionRecord) -> None:
        with self._state_lock:
            skipped = record.id in self._cancelled
        if skipped:
            record.annotate(simulation={"status": "skipped", "reason": "cancelled"})
            self.store.save(record)
            log_event("simulation_skipped", data={"record_id": record.id})
            return
        try:
            sim = self.simulator.simulate(intent, ident.identity_id)
        except SimulationUnavailable as e:
            # Soft failure: proceed to broadcast without a simulation.
            record.annotate(simulation={"status": "unavailable", "error": e.message})
            self.store.save(record)
            self.metrics.inc("simulation_unavailable_total")
            log_event("simulation_unavailable", data={"record_id": record.id, "error": e.message}, level="warn")
            return
        record.advance(TxStatus.SIMULATED, simulation=_simulation_summary(sim))
        self.store.save(record)
        if not sim.succeeded:
            log_event(
                "simulation_reverted_advisory",
                data={"record_id": record.id, "revert_reason": sim.revert_reason},
                level="warn",
            )

    def _broadcast(self, intent: TransactionIntent, record: TransactionRecord, signed: SignedTransaction) -> None:
        try:
            tx_hash = self.broadcaster.broadcast(signed, intent.chain)
        except BroadcastError as e:
            if not e.timed_out:
                # The node refused it, so the nonce is free again. The ledger charge stays.
                self.signer.release_nonce(signed)
            kind = FailureKind.TIMED_OUT if e.timed_out else FailureKind.BROADCAST_ERROR
            self._fail(record, kind, e)
            return
        if tx_hash.lower() != (record.tx_hash or "").lower():
            log_event(
                "tx_hash_mismatch",
                data={"record_id": record.id, "signed_hash": record.tx_hash, "rpc_hash": tx_hash},
                level="warn",
            )
        record.advance(TxStatus.BROADCAST)
        self.store.save(record)

        if not self.wait_for_confirmation:
            return
        state = self.broadcaster.await_confirmation(record.tx_hash or tx_hash, intent.chain, self.confirmation_timeout)
        self._apply_confirmation(record, state)

    def _apply_confirmation(self, record: TransactionRecord, state: str) -> None:
        if state == CONFIRMED:
            record.advance(TxStatus.CONFIRMED, confirmation="confirmed")
        elif state == REVERTED:
            record.advance(
                TxStatus.FAILED,
                confirmation="reverted",
                failure_kind=FailureKind.REVERTED,
                error_code="reverted",
                error_message="Transaction reverted on-chain",
            )
        else:
            # Not a failure: the transaction may still land.
            record.annotate(confirmation="unknown")
            timeout = ConfirmationTimeout(data={"record_id": record.id, "tx_hash": record.tx_hash})
            log_event("confirmation_unknown", data={"code": timeout.code, "reason": timeout.message, **timeout.data}, level="warn")
        self.store.save(record)

    # ---- other operations -------------------------------------------------------------------

    def simulate(self, identity_id: str, intent: TransactionIntent) -> SimulationResult:
        """
        Standalone dry run. Guardrails are checked (without charging the ledger) so an agent
        cannot use simulation to scout destinations it may not pay. No key is touched.
        """
        ident = self.identities.get(identity_id)
        self._sync_policy(ident)
        if not ident.intents_enabled:
            raise GuardrailDenied(Rule.INTENTS_DISABLED, "Transaction intents are disabled for this identity.")
        decision = evaluate(intent, ident.policy, ident.ledger.recent_spend())
        if isinstance(decision, Deny):
            self.metrics.record_denial(decision.rule)
            raise GuardrailDenied(decision.rule, decision.reason, decision.data)
        started = time.time()
        try:
            result = self.simulator.simulate(intent, identity_id)
        finally:
            self.metrics.observe_ms("simulate_ms", (time.time() - started) * 1000.0)
        self.metrics.inc("simulations_total", status=result.status)
        return result

    def cancel_simulation(self, record_id: str) -> Dict[str, Any]:
        """
        Skip a pending advisory simulation. Once a transaction is broadcast nothing can be
        cancelled; that request is a reported no-op.
        """
        record = self.get(record_id)
        with self._state_lock:
            pending = (
                record.id in self._in_flight
                and record.simulate_first
                and record.status == TxStatus.SIGNED
                and record.simulation is None
            )
            if pending:
                self._cancelled.add(record.id)
        if pending:
            log_event("simulation_cancel_requested", data={"record_id": record.id})
            return {"record_id": record.id, "cancelled": True, "status": record.status}
        if record.status in (TxStatus.BROADCAST, TxStatus.CONFIRMED):
            reason = "Transaction already broadcast; it cannot be cancelled."
        elif not record.simulate_first:
            reason = "No simulation was requested for this transaction."
        else:
            reason = f"Simulation is no longer pending (status: {record.status})."
        return {"record_id": record.id, "cancelled": False, "status": record.status, "reason": reason}

    def check_confirmation(self, record_id: str) -> TransactionRecord:
        """Re-poll a broadcast transaction whose confirmation was unknown."""
        record = self.get(record_id)
        if record.status != TxStatus.BROADCAST:
            return record
        try:
            state = self.broadcaster.receipt_status(record.tx_hash, record.chain)
        except Exception as e:
            err = classify_exception(e)
            log_event(
                "receipt_poll_error",
                data={"record_id": record.id, "tx_hash": record.tx_hash, "code": err.code, "error": err.message},
                level="warn",
            )
            state = PENDING
        if state == PENDING:
            if record.confirmation != "unknown":
                record.annotate(confirmation="unknown")
                self.store.save(record)
            return record
        self._apply_confirmation(record, state)
        self.metrics.record_outcome(chain=record.chain, status=record.status)
        return record

    def get(self, record_id: str) -> TransactionRecord:
        record = self.store.get(record_id)
        if record is None:
            raise AppError("not_found", f"Unknown transaction: {record_id}", {"record_id": record_id})
        return record

    def list(self, identity_id: str, *, status: Optional[str] = None, limit: int = 50) -> List[TransactionRecord]:
        return self.store.list(identity_id=identity_id, status=status, limit=limit)

    def guardrails(self, identity_id: str) -> Dict[str, Any]:
        return self.identities.get(identity_id).guardrail_snapshot()

    def rebuild_ledgers(self) -> int:
        n = 0
        for ident in self.identities.list_identities():
            n += ident.ledger.rebuild(self.store.list(identity_id=ident.identity_id, limit=0))
        return n

    # ---- record outcomes --------------------------------------------------------------------

    def _block(self, record: TransactionRecord, decision: Deny) -> None:
        record.advance(TxStatus.BLOCKED, block_rule=decision.rule, block_reason=decision.reason)
        self.store.save(record)
        self.metrics.record_denial(decision.rule)
        log_event(
            "guardrail_denied",
            data={"record_id": record.id, "identity_id": record.identity_id, "rule": decision.rule, "reason": decision.reason},
        )

    def _fail(self, record: TransactionRecord, kind: str, error: AppError) -> None:
        record.advance(
            TxStatus.FAILED,
            failure_kind=kind,
            error_code=error.code,
            error_message=error.message,
        )
        self.store.save(record)
        log_event(
            "tx_failed",
            data={"record_id": record.id, "identity_id": record.identity_id, "kind": kind, "error": str(error)},
            level="error" if kind != FailureKind.SIMULATION_GATE else "warn",
        )

    def _finish(self, record: TransactionRecord, started: float) -> None:
        self.metrics.observe_ms("submit_ms", (time.time() - started) * 1000.0)
        self.metrics.record_outcome(chain=record.chain, status=record.status)
        ctx = get_current_context() or {}
        self.audit.append(
            ts_ms=now_ms(),
            request_id=str(ctx.get("request_id") or record.id),
            tool=str(ctx.get("tool") or "submit_transaction"),
            ok=record.status not in (TxStatus.BLOCKED, TxStatus.FAILED),
            error_code=record.error_code or record.block_rule,
            identity_id=record.identity_id,
            chain=record.chain,
            record_id=record.id,
            status=record.status,
            summary={
                "to": record.to,
                "value": record.value,
                "tx_hash": record.tx_hash,
                "failure_kind": record.failure_kind,
                "confirmation": record.confirmation,
            },
        )


def _simulation_summary(sim: SimulationResult) -> Dict[str, Any]:
    return {
        "status": sim.status,
        "simulation_id": sim.simulation_id,
        "gas_used": sim.gas_used,
        "gas_cost_estimate": sim.gas_cost_estimate,
        "revert_reason": sim.revert_reason,
        "dashboard_url": sim.dashboard_url,
    }


def _log_pipeline_error(future: Any, record_id: str) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        log_event(
            "pipeline_error",
            data={"record_id": record_id, "error": f"{type(exc).__name__}: {exc}"},
            level="error",
        )


def default_executor(max_workers: int = 4) -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tx-pipeline")
