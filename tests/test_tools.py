import json
from unittest.mock import MagicMock

import pytest
from web3 import Web3

import app.tools.transactions as tools
from app.core.config import settings
from app.core.container import global_container
from common.rate_limiter import FixedWindowRateLimiter
from core.policy import GuardrailPolicy
from observability.metrics import Metrics

DEAD = "0x000000000000000000000000000000000000dEaD"


@pytest.fixture
def wired(make_harness, scenario_policy, monkeypatch):
    h = make_harness(scenario_policy, identity_id=settings.DEFAULT_IDENTITY_ID)
    monkeypatch.setattr(global_container, "orchestrator", h.orch)
    monkeypatch.setattr(global_container, "identities", h.identities)
    monkeypatch.setattr(global_container, "rate_limiter", FixedWindowRateLimiter())
    monkeypatch.setattr(global_container, "metrics", Metrics())
    return h


def test_check_guardrails_reports_policy(wired):
    out = json.loads(tools.check_guardrails())
    assert out["ok"] is True
    g = out["data"]["guardrails"]
    assert g["allowed_chains"] == ["base"]
    assert g["allowed_destinations"] == []
    assert g["max_value_per_tx_eth"] == "0.001"
    assert g["daily_spend_limit_eth"] == "0.005"


def test_submit_blocked_is_not_an_error(wired):
    out = json.loads(tools.submit_transaction(to=DEAD, value="0.01", chain="base"))
    assert out["status"] == "blocked"
    assert out["rule"] == "max_value_per_tx_exceeded"
    wired.signer.sign.assert_not_called()


def test_submit_ok_returns_transaction(wired):
    out = json.loads(tools.submit_transaction(to=DEAD, value="0.0001", chain="base", simulate_first=False))
    assert out["status"] == "ok"
    tx = out["transaction"]
    assert tx["tx_status"] == "confirmed"
    assert tx["explorer_url"].startswith("https://basescan.org/tx/")

    listed = json.loads(tools.list_transactions())
    assert [t["id"] for t in listed["transactions"]] == [tx["id"]]

    got = json.loads(tools.get_transaction(tx["id"]))
    assert got["transaction"]["tx_hash"] == tx["tx_hash"]


def test_invalid_intent_is_error(wired):
    out = json.loads(tools.submit_transaction(to="0x123", value="1", chain="base"))
    assert out == {"status": "error", "reason": out["reason"], "kind": "invalid_intent", "transaction": None}


def test_submit_is_rate_limited(wired, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_SUBMIT_PER_MIN", 1)
    tools.submit_transaction(to=DEAD, value="0.0001", chain="base", simulate_first=False)
    out = json.loads(tools.submit_transaction(to=DEAD, value="0.0001", chain="base", simulate_first=False))
    assert out["kind"] == "rate_limited"
    assert wired.signer.sign.call_count == 1


def test_simulate_tool_denies_before_simulating(wired):
    out = json.loads(tools.simulate_transaction(to=DEAD, value="0.0001", chain="ethereum"))
    assert out["status"] == "blocked"
    assert wired.simulator.calls == []

    ok = json.loads(tools.simulate_transaction(to=DEAD, value="0.0001", chain="base"))
    assert ok["simulation"]["status"] == "success"


def test_refresh_survives_receipt_poll_error(wired):
    wired.broadcaster.confirmation = "pending"
    tx = json.loads(tools.submit_transaction(to=DEAD, value="0.0001", chain="base", simulate_first=False))["transaction"]
    assert tx["tx_status"] == "broadcast"

    wired.broadcaster.receipt_status = MagicMock(side_effect=ConnectionError("connection reset by peer"))
    got = json.loads(tools.get_transaction(tx["id"], refresh=True))
    assert got["status"] == "ok"
    assert got["transaction"]["tx_status"] == "broadcast"
    assert got["transaction"]["confirmation"] == "unknown"


def test_unknown_transaction(wired):
    out = json.loads(tools.get_transaction("tx_missing"))
    assert out["kind"] == "not_found"
    out = json.loads(tools.cancel_simulation("tx_missing"))
    assert out["ok"] is False


def test_check_balance(monkeypatch):
    w3 = MagicMock()
    w3.is_address = Web3.is_address
    w3.to_checksum_address = Web3.to_checksum_address
    w3.from_wei = Web3.from_wei
    w3.eth.get_balance.return_value = 1_500_000_000_000_000_000
    monkeypatch.setattr(tools, "get_web3", lambda chain: w3)
    out = json.loads(tools.check_balance(DEAD, chain="base"))
    assert out["data"]["balance"] == "1.5"
    assert out["data"]["symbol"] == "ETH"

    bad = json.loads(tools.check_balance("nope", chain="base"))
    assert bad["error"]["code"] == "invalid_address"


def test_encode_token_transfer_tool():
    out = json.loads(tools.encode_token_transfer(token="usdc", to=DEAD, amount="2"))
    assert out["data"]["calldata"].startswith("0xa9059cbb")
    err = json.loads(tools.encode_token_transfer(token="nope", to=DEAD, amount="2"))
    assert err["error"]["code"] == "invalid_intent"


def test_resolve_ens_rejects_non_ens_names():
    out = json.loads(tools.resolve_ens("vitalik"))
    assert out["error"]["code"] == "invalid_ens_name"


def test_tool_calls_are_counted(wired):
    tools.check_guardrails()
    counters = json.loads(tools.get_metrics())["data"]["counters"]
    assert counters['tool_calls_total{outcome="ok",tool="check_guardrails"}'] == 1
    assert global_container.metrics.counter("tool_calls_total", tool="check_guardrails", outcome="ok") == 1


def test_guardrails_unchanged_by_agent_tools(wired):
    before = wired.ident.policy
    tools.submit_transaction(to=DEAD, value="0.0001", chain="base", simulate_first=False)
    assert wired.ident.policy is before
    assert isinstance(before, GuardrailPolicy)


def test_vault_guardrails_bind_submit_without_prior_check(make_harness, monkeypatch):
    h = make_harness(identity_id=settings.DEFAULT_IDENTITY_ID, policy_source=global_container.sync_guardrails)
    vault = MagicMock()
    vault.get_agent_config.return_value = {"tx_allowed_chains": ["base"], "tx_max_value_eth": "0.001"}
    monkeypatch.setattr(settings, "GUARDRAIL_SOURCE", "vault")
    monkeypatch.setattr(global_container, "vault", vault)
    monkeypatch.setattr(global_container, "orchestrator", h.orch)
    monkeypatch.setattr(global_container, "identities", h.identities)
    monkeypatch.setattr(global_container, "rate_limiter", FixedWindowRateLimiter())
    monkeypatch.setattr(global_container, "metrics", Metrics())

    out = json.loads(tools.submit_transaction(to=DEAD, value="0.5", chain="ethereum"))
    assert out["status"] == "blocked"
    assert out["rule"] == "chain_not_allowed"
    vault.get_agent_config.assert_called_with(settings.DEFAULT_IDENTITY_ID)
    h.signer.sign.assert_not_called()

    sim = json.loads(tools.simulate_transaction(to=DEAD, value="0.5", chain="base"))
    assert sim["status"] == "blocked"
    assert h.simulator.calls == []


def test_unreachable_vault_guardrails_refuse_to_sign(make_harness, monkeypatch):
    h = make_harness(identity_id=settings.DEFAULT_IDENTITY_ID, policy_source=global_container.sync_guardrails)
    vault = MagicMock()
    vault.get_agent_config.side_effect = ConnectionError("connection refused")
    monkeypatch.setattr(settings, "GUARDRAIL_SOURCE", "vault")
    monkeypatch.setattr(global_container, "vault", vault)
    monkeypatch.setattr(global_container, "orchestrator", h.orch)
    monkeypatch.setattr(global_container, "identities", h.identities)
    monkeypatch.setattr(global_container, "rate_limiter", FixedWindowRateLimiter())
    monkeypatch.setattr(global_container, "metrics", Metrics())

    out = json.loads(tools.submit_transaction(to=DEAD, value="0.0001", chain="base"))
    assert out["status"] == "error"
    assert out["kind"] == "policy_unavailable"
    h.signer.sign.assert_not_called()
