import os
import secrets
from typing import List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

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
from common.errors import AppError
from core.identities import ACTOR_OWNER
from core.policy import GuardrailPolicy
from observability import build_log_context, log_event, render_prometheus
from observability.logging import set_current_context

# Initial context
API_CTX = build_log_context(tool="api_server")

app = FastAPI(title="Guarded Signer API", version=settings.VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this to your frontend domain
    allow_methods=["*"],
    allow_headers=["*"],
)


class GuardrailUpdate(BaseModel):
    allowed_chains: List[str] = []
    allowed_destinations: List[str] = []
    max_value_per_tx_eth: Optional[str] = None
    daily_spend_limit_eth: Optional[str] = None


def _http_status(e: AppError) -> int:
    return {"not_found": 404, "forbidden": 403, "rate_limited": 429, "invalid_intent": 422}.get(e.code, 400)


def _enter(tool: str, identity_id: Optional[str] = None) -> None:
    set_current_context(build_log_context(tool=tool, identity_id=identity_id))


@app.get("/api/health")
async def health_check():
    return {
        "status": "ok",
        "vault_configured": global_container.vault.is_configured(),
        "simulation_configured": global_container.simulator.is_configured(),
    }


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    return render_prometheus(global_container.metrics.snapshot())


@app.get("/api/identities/{identity_id}/guardrails")
def get_guardrails(identity_id: str):
    try:
        return global_container.orchestrator.guardrails(identity_id)
    except AppError as e:
        raise HTTPException(status_code=_http_status(e), detail=e.message)


@app.put("/api/identities/{identity_id}/guardrails")
def replace_guardrails(identity_id: str, req: GuardrailUpdate, x_owner_token: str = Header(default="")):
    """
    Owner-only: atomically replace the identity's guardrails. Agents never hold the owner token.
    """
    expected = settings.OWNER_API_TOKEN
    if not expected or not secrets.compare_digest(x_owner_token.encode(), expected.encode()):
        log_event("guardrail_update_rejected", ctx=API_CTX, data={"identity_id": identity_id}, level="warn")
        raise HTTPException(status_code=403, detail="Owner token required to change guardrails.")
    try:
        policy = GuardrailPolicy.build(
            chains=req.allowed_chains,
            destinations=req.allowed_destinations,
            max_per_tx=req.max_value_per_tx_eth,
            daily_limit=req.daily_spend_limit_eth,
        )
        global_container.identities.replace_policy(identity_id, policy, actor=ACTOR_OWNER)
    except AppError as e:
        raise HTTPException(status_code=_http_status(e), detail=e.message)
    log_event("guardrails_replaced", ctx=API_CTX, data={"identity_id": identity_id, "guardrails": policy.snapshot()})
    return global_container.orchestrator.guardrails(identity_id)


@app.post("/api/identities/{identity_id}/transactions")
def submit(identity_id: str, req: IntentRequest):
    _enter("submit_transaction", identity_id)
    try:
        global_container.rate_limiter.check(
            key=f"tool:submit_transaction:{identity_id}",
            limit=settings.RATE_LIMIT_SUBMIT_PER_MIN,
        )
        record = global_container.orchestrator.submit(identity_id, req.to_intent(), idempotency_key=req.idempotency_key)
        return result_from_record(record)
    except AppError as e:
        return result_from_error(e)
    finally:
        set_current_context(None)


@app.post("/api/identities/{identity_id}/simulate")
def simulate(identity_id: str, req: IntentRequest):
    _enter("simulate_transaction", identity_id)
    try:
        sim = global_container.orchestrator.simulate(identity_id, req.to_intent())
        return result_from_simulation(sim)
    except AppError as e:
        return result_from_error(e)
    finally:
        set_current_context(None)


@app.get("/api/identities/{identity_id}/transactions")
def list_transactions(identity_id: str, status: Optional[str] = None, limit: int = 50):
    records = global_container.orchestrator.list(identity_id, status=status, limit=max(1, min(limit, 500)))
    return TransactionList(transactions=[TransactionView.from_record(r) for r in records])


@app.get("/api/transactions/{record_id}")
def get_transaction(record_id: str, refresh: bool = False):
    try:
        orch = global_container.orchestrator
        record = orch.check_confirmation(record_id) if refresh else orch.get(record_id)
    except AppError as e:
        raise HTTPException(status_code=_http_status(e), detail=e.message)
    return result_from_record(record)


@app.post("/api/transactions/{record_id}/cancel-simulation")
def cancel_simulation(record_id: str):
    try:
        return global_container.orchestrator.cancel_simulation(record_id)
    except AppError as e:
        raise HTTPException(status_code=_http_status(e), detail=e.message)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("API_PORT", 8000))
    host = os.getenv("API_HOST", "127.0.0.1")
    log_event("api_server_started", ctx=API_CTX, data={"port": port, "host": host})
    uvicorn.run(app, host=host, port=port)
