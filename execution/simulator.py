"""
Dry-run simulation adapter.

The simulation service is called before (or instead of) broadcasting. Its responses are not
uniform: field names arrive in snake_case or camelCase, and revert reasons come back as a
plain string, a `{message}` object, a list of either, or raw ABI-encoded `Error(string)`
return data. Everything is normalised into one `SimulationResult`.
"""

from __future__ import annotations

import os
from typing import Any, Callable, Dict, List, Optional

import requests
from eth_abi import decode

from common.errors import SimulationUnavailable
from core.models import SimulationResult, TransactionIntent
from observability import log_event

ERROR_STRING_SELECTOR = "08c379a0"

_STATUS_ALIASES = {
    "success": "success",
    "succeeded": "success",
    "ok": "success",
    "reverted": "reverted",
    "revert": "reverted",
    "failed": "reverted",
    "failure": "reverted",
    "error": "error",
}


def _first(body: Dict[str, Any], *names: str) -> Any:
    for n in names:
        if n in body and body[n] is not None:
            return body[n]
    return None


def decode_revert_data(hex_data: str) -> Optional[str]:
    """Decode `Error(string)` return data (selector 0x08c379a0). None for anything else."""
    h = hex_data[2:] if hex_data.startswith("0x") else hex_data
    if not h.lower().startswith(ERROR_STRING_SELECTOR):
        return None
    try:
        (msg,) = decode(["string"], bytes.fromhex(h[8:]))
    except Exception:
        return None
    return str(msg)


def normalize_revert_reason(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, str):
        s = raw.strip()
        if not s:
            return None
        if s.startswith("0x"):
            decoded = decode_revert_data(s)
            if decoded is not None:
                return decoded
        return s
    if isinstance(raw, dict):
        for k in ("message", "reason", "error", "data"):
            if k in raw:
                got = normalize_revert_reason(raw[k])
                if got:
                    return got
        return None
    if isinstance(raw, (list, tuple)):
        parts = [p for p in (normalize_revert_reason(x) for x in raw) if p]
        return "; ".join(parts) if parts else None
    return str(raw)


def normalize_simulation_response(body: Any) -> SimulationResult:
    if not isinstance(body, dict):
        raise SimulationUnavailable("Simulation service returned a malformed body", {"body_type": type(body).__name__})

    raw_status = _first(body, "status", "result")
    if raw_status is None and isinstance(body.get("success"), bool):
        raw_status = "success" if body["success"] else "reverted"
    status = _STATUS_ALIASES.get(str(raw_status or "").strip().lower())
    if status is None:
        raise SimulationUnavailable("Simulation service returned an unknown status", {"status": raw_status})

    gas_raw = _first(body, "gas_used", "gasUsed")
    try:
        gas_used = int(gas_raw) if gas_raw is not None else None
    except (TypeError, ValueError):
        gas_used = None

    cost = _first(body, "gas_estimate_usd", "gasEstimateUsd", "gas_cost_usd", "gasCostUsd", "gas_cost_estimate")

    changes = _first(body, "balance_changes", "balanceChanges") or []
    balance_changes: List[Dict[str, Any]] = [c for c in changes if isinstance(c, dict)] if isinstance(changes, list) else []

    revert_reason = normalize_revert_reason(_first(body, "revert_reason", "revertReason"))
    if revert_reason is None and status != "success":
        revert_reason = normalize_revert_reason(_first(body, "error", "errors", "message"))

    return SimulationResult(
        status=status,
        gas_used=gas_used,
        gas_cost_estimate=str(cost) if cost is not None else None,
        balance_changes=balance_changes,
        revert_reason=revert_reason,
        dashboard_url=_first(body, "tenderly_dashboard_url", "tenderlyDashboardUrl", "dashboard_url", "dashboardUrl"),
        simulation_id=_first(body, "simulation_id", "simulationId", "id"),
    )


class HttpSimulator:
    """
    POST the intent to the simulation service.

    `token_provider` supplies a bearer token (the vault agent token when the simulation
    endpoint lives behind the vault API).
    """

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        token_provider: Optional[Callable[[], str]] = None,
        session: Any = None,
    ) -> None:
        self.url = (url or os.getenv("SIMULATION_URL") or "").strip()
        self.timeout = float(timeout if timeout is not None else float(os.getenv("SIMULATION_TIMEOUT_SEC", "15")))
        self._token_provider = token_provider
        self._http = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.url)

    def simulate(self, intent: TransactionIntent, identity_id: str) -> SimulationResult:
        if not self.url:
            raise SimulationUnavailable("No simulation endpoint configured (SIMULATION_URL)", {})
        url = self.url.replace("{identity_id}", identity_id)
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        try:
            if self._token_provider is not None:
                headers["Authorization"] = f"Bearer {self._token_provider()}"
            res = self._http.post(url, json=intent.to_request(), headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise SimulationUnavailable(f"Simulation timed out after {self.timeout}s", {"timeout": self.timeout}) from e
        except requests.RequestException as e:
            raise SimulationUnavailable(f"Simulation service unreachable: {e}", {}) from e
        except Exception as e:
            raise SimulationUnavailable(f"Simulation request failed: {e}", {}) from e

        if res.status_code >= 500:
            raise SimulationUnavailable(f"Simulation service error {res.status_code}", {"status": res.status_code})
        try:
            body = res.json()
        except ValueError as e:
            raise SimulationUnavailable("Simulation service returned invalid JSON", {"status": res.status_code}) from e
        if res.status_code >= 400:
            detail = body.get("detail") or body.get("message") if isinstance(body, dict) else None
            raise SimulationUnavailable(
                f"Simulation rejected: {detail or res.status_code}",
                {"status": res.status_code},
            )

        result = normalize_simulation_response(body)
        log_event(
            "simulation_result",
            data={
                "identity_id": identity_id,
                "chain": intent.chain,
                "status": result.status,
                "simulation_id": result.simulation_id,
            },
        )
        return result
