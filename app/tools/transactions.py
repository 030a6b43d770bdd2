import json
import time
from typing import Any, Callable, Dict, Optional

from fastmcp import FastMCP

from app.core.config import settings
from app.core.container import global_container
from app.schemas import (
    IntentRequest,
    TransactionList,
    TransactionView,
    result_from_error,
    result_from_record,
    result_from_simulation,
)
from common.errors import AppError, classify_exception
from common.rate_limiter import RateLimitError
from core.chains import get_chain, get_web3
from core.tokens import encode_token_transfer as _encode_token_transfer
from observability import build_log_context, log_event
from observability.logging import set_current_context

_SUBMIT_TOOLS = {"submit_transaction"}


def _json_ok(data: Dict[str, Any] | None = None) -> str:
    payload = {"ok": True, "data": data or {}}
    return json.dumps(payload, indent=2, sort_keys=True)


def _json_err(code: str, message: str, data: Dict[str, Any] | None = None) -> str:
    payload = {"ok": False, "error": {"code": code, "message": message, "data": data or {}}}
    return json.dumps(payload, indent=2, sort_keys=True)


def _dump(model: Any) -> str:
    return model.model_dump_json(indent=2)


def _identity_id(identity_id: str) -> str:
    return (identity_id or "").strip() or settings.DEFAULT_IDENTITY_ID


def _rate_limit(tool: str, identity_id: str) -> Optional[str]:
    """
    Per-tool, per-identity fixed window.

    Env:
      - RATE_LIMIT_DEFAULT_PER_MIN (default 120)
      - RATE_LIMIT_SUBMIT_PER_MIN (default 10) for signing tools
    """
    limit = settings.RATE_LIMIT_SUBMIT_PER_MIN if tool in _SUBMIT_TOOLS else settings.RATE_LIMIT_DEFAULT_PER_MIN
    metrics = global_container.metrics
    try:
        metrics.inc("rate_limit_checks_total")
        global_container.rate_limiter.check(key=f"tool:{tool}:{identity_id}", limit=limit, window_seconds=60)
        return None
    except RateLimitError as e:
        metrics.inc("rate_limited_total", tool=tool)
        return _dump(result_from_error(e))


def _with_observability(tool: str, identity_id: Optional[str], fn: Callable[[], str]) -> str:
    """
    Wrap a tool handler to emit structured logs and basic timing metrics.
    """
    ctx = build_log_context(tool=tool, identity_id=identity_id)
    metrics = global_container.metrics
    started = time.time()
    log_event("tool_start", ctx=ctx)
    set_current_context(ctx)
    try:
        out = fn()
        metrics.inc("tool_calls_total", tool=tool, outcome="ok")
        return out
    except Exception as e:
        metrics.inc("tool_calls_total", tool=tool, outcome="error")
        log_event("tool_error", ctx=ctx, data={"error": str(e)}, level="error")
        raise
    finally:
        elapsed_ms = (time.time() - started) * 1000.0
        metrics.observe_ms("tool_latency_ms", elapsed_ms, tool=tool)
        log_event("tool_end", ctx=ctx, data={"elapsed_ms": round(elapsed_ms, 3)})
        set_current_context(None)


def check_guardrails(identity_id: str = "") -> str:
    """
    Show the guardrails the owner configured for this signing identity: allowed chains,
    allowed destinations, per-transaction max and daily limit ("unlimited" when unset).
    """
    ident_id = _identity_id(identity_id)

    def _run() -> str:
        try:
            global_container.refresh_guardrails(ident_id)
            return _json_ok({"identity_id": ident_id, "guardrails": global_container.orchestrator.guardrails(ident_id)})
        except AppError as e:
            return _json_err(e.code, e.message, e.data)

    return _with_observability("check_guardrails", ident_id, _run)


def simulate_transaction(to: str, value: str, chain: str = "base", data: str = "", identity_id: str = "") -> str:
    """
    Dry-run a transaction without signing or broadcasting. Returns status (success / reverted /
    error), gas, balance changes, revert reason and a dashboard URL for the full trace.
    """
    ident_id = _identity_id(identity_id)
    rl = _rate_limit("simulate_transaction", ident_id)
    if rl:
        return rl

    def _run() -> str:
        try:
            intent = IntentRequest(to=to, value=value, chain=chain, data=data or None).to_intent()
            sim = global_container.orchestrator.simulate(ident_id, intent)
            return _dump(result_from_simulation(sim))
        except AppError as e:
            return _dump(result_from_error(e))

    return _with_observability("simulate_transaction", ident_id, _run)


def submit_transaction(
    to: str,
    value: str,
    chain: str = "base",
    data: str = "",
    simulate_first: bool = True,
    require_simulation_success: bool = False,
    idempotency_key: str = "",
    identity_id: str = "",
) -> str:
    """
    [SIGNS] Submit a transaction for guardrail checks, signing and broadcast. The private key
    never leaves the signer. A blocked result means a guardrail worked as intended.
    Pass the same `idempotency_key` when retrying an ambiguous failure to avoid a double spend.
    """
    ident_id = _identity_id(identity_id)
    rl = _rate_limit("submit_transaction", ident_id)
    if rl:
        return rl

    def _run() -> str:
        try:
            intent = IntentRequest(
                to=to,
                value=value,
                chain=chain,
                data=data or None,
                simulate_first=simulate_first,
                require_simulation_success=require_simulation_success,
            ).to_intent()
            record = global_container.orchestrator.submit(ident_id, intent, idempotency_key=idempotency_key or None)
            return _dump(result_from_record(record))
        except AppError as e:
            return _dump(result_from_error(e))

    return _with_observability("submit_transaction", ident_id, _run)


def list_transactions(identity_id: str = "", status: str = "", limit: int = 20) -> str:
    """List recent transactions for this identity, newest first."""
    ident_id = _identity_id(identity_id)

    def _run() -> str:
        records = global_container.orchestrator.list(ident_id, status=status or None, limit=max(1, min(int(limit), 200)))
        return _dump(TransactionList(transactions=[TransactionView.from_record(r) for r in records]))

    return _with_observability("list_transactions", ident_id, _run)


def get_transaction(record_id: str, refresh: bool = False) -> str:
    """Fetch one transaction. `refresh=True` re-polls the chain when confirmation is still unknown."""

    def _run() -> str:
        try:
            orch = global_container.orchestrator
            record = orch.check_confirmation(record_id) if refresh else orch.get(record_id)
            return _dump(result_from_record(record))
        except AppError as e:
            return _dump(result_from_error(e))

    return _with_observability("get_transaction", None, _run)


def cancel_simulation(record_id: str) -> str:
    """
    Skip a pending pre-broadcast simulation. A transaction that was already broadcast cannot be
    cancelled; that request is reported as a no-op.
    """

    def _run() -> str:
        try:
            return _json_ok(global_container.orchestrator.cancel_simulation(record_id))
        except AppError as e:
            return _json_err(e.code, e.message, e.data)

    return _with_observability("cancel_simulation", None, _run)


def check_balance(address: str, chain: str = "base") -> str:
    """Native balance of an address on a supported chain."""

    def _run() -> str:
        try:
            info = get_chain(chain)
            w3 = get_web3(info.name)
            if not w3.is_address(address):
                return _json_err("invalid_address", f"Invalid address format: {address}")
            wei = w3.eth.get_balance(w3.to_checksum_address(address))
            return _json_ok(
                {
                    "address": address,
                    "chain": info.name,
                    "balance_wei": str(wei),
                    "balance": str(w3.from_wei(wei, "ether")),
                    "symbol": info.native_symbol,
                }
            )
        except AppError as e:
            return _json_err(e.code, e.message, e.data)
        except Exception as e:
            ae = classify_exception(e)
            return _json_err(ae.code, ae.message)

    return _with_observability("check_balance", None, _run)


def encode_token_transfer(token: str, to: str, amount: str, chain: str = "base") -> str:
    """
    Build ERC-20 `transfer(to, amount)` calldata. Submit it with `to` set to the returned
    token_contract, `value` "0" and `data` set to the calldata.
    """

    def _run() -> str:
        try:
            return _json_ok(_encode_token_transfer(chain=chain, token=token, to=to, amount=amount))
        except AppError as e:
            return _json_err(e.code, e.message, e.data)

    return _with_observability("encode_token_transfer", None, _run)


def resolve_ens(name: str) -> str:
    """Resolve an ENS name (e.g. vitalik.eth) to an address on Ethereum mainnet."""

    def _run() -> str:
        n = (name or "").strip().lower()
        if not n.endswith(".eth"):
            return _json_err("invalid_ens_name", f"Not an ENS name: {name}")
        try:
            address = get_web3("ethereum").ens.address(n)
        except Exception as e:
            ae = classify_exception(e)
            return _json_err(ae.code, f"ENS lookup failed: {ae.message}")
        if not address:
            return _json_err("not_found", f"ENS name {n} does not resolve to an address")
        return _json_ok({"name": n, "address": str(address)})

    return _with_observability("resolve_ens", None, _run)


def get_metrics() -> str:
    """Process counters, timers and gauges."""
    return _json_ok(global_container.metrics.snapshot())


def register_transaction_tools(mcp: FastMCP):
    mcp.tool(check_guardrails)
    mcp.tool(simulate_transaction)
    mcp.tool(submit_transaction)
    mcp.tool(list_transactions)
    mcp.tool(get_transaction)
    mcp.tool(cancel_simulation)
    mcp.tool(check_balance)
    mcp.tool(encode_token_transfer)
    mcp.tool(resolve_ens)
    mcp.tool(get_metrics)
