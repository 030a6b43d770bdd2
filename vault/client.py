"""
HTTP client for the external secrets vault.

Only three calls are used:
- `POST /v1/auth/agent-token` (agent credentials -> short-lived bearer token)
- `GET /v1/agents/{agent_id}` (owner-configured guardrails for the agent)
- `GET /v1/vaults/{vault_id}/secrets/{path}` (signing key material)

Secret values are returned to the caller and never cached or logged here.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from common.cache import TTLCache
from common.errors import AppError, KeyNotFound
from execution.retry import with_retry
from observability import log_event

DEFAULT_API_URL = "https://api.1claw.xyz"
TOKEN_REFRESH_MARGIN_SEC = 120
AGENT_CONFIG_TTL_SEC = 30


class VaultClient:
    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        agent_id: Optional[str] = None,
        api_key: Optional[str] = None,
        session: Any = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_url = (api_url or os.getenv("VAULT_API_URL") or DEFAULT_API_URL).rstrip("/")
        self.agent_id = agent_id if agent_id is not None else (os.getenv("VAULT_AGENT_ID") or "")
        self._api_key = api_key if api_key is not None else (os.getenv("VAULT_AGENT_API_KEY") or "")
        self._http = session or requests.Session()
        self.timeout = float(timeout)
        self._cache: TTLCache[str, Any] = TTLCache(max_items=64)

    def is_configured(self) -> bool:
        return bool(self.agent_id and self._api_key)

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise AppError(
                "vault_not_configured",
                "Vault agent credentials missing. Set VAULT_AGENT_ID and VAULT_AGENT_API_KEY.",
                {},
            )

    def _fetch_token(self) -> str:
        res = self._http.post(
            f"{self.api_url}/v1/auth/agent-token",
            json={"agent_id": self.agent_id, "api_key": self._api_key},
            timeout=self.timeout,
        )
        if res.status_code in (401, 403):
            raise AppError("auth_error", f"Vault auth failed: {res.status_code}", {"status": res.status_code})
        res.raise_for_status()
        body = res.json()
        token = body.get("access_token")
        if not token:
            raise AppError("auth_error", "Vault auth response missing access_token", {})
        ttl = max(0, int(body.get("expires_in") or 0) - TOKEN_REFRESH_MARGIN_SEC)
        if ttl > 0:
            self._cache.set("token", token, ttl)
        return str(token)

    def token(self) -> str:
        self._require_configured()
        cached = self._cache.get("token")
        if cached:
            return cached
        return with_retry("vault_auth", self._fetch_token)

    def _get(self, path: str) -> Dict[str, Any]:
        res = self._http.get(
            f"{self.api_url}{path}",
            headers={"Authorization": f"Bearer {self.token()}", "Accept": "application/json"},
            timeout=self.timeout,
        )
        if res.status_code == 401:
            # Token revoked early; next attempt re-authenticates.
            self._cache.delete("token")
            raise AppError("auth_error", "Vault rejected the agent token", {"status": 401})
        if res.status_code == 404:
            raise AppError("not_found", f"Vault resource not found: {path}", {"path": path})
        if res.status_code >= 400 and res.status_code < 500:
            try:
                detail = res.json()
            except ValueError:
                detail = {}
            msg = detail.get("detail") or detail.get("message") or f"Vault error {res.status_code}"
            raise AppError("vault_error", str(msg), {"status": res.status_code, "path": path})
        res.raise_for_status()
        body = res.json()
        if not isinstance(body, dict):
            raise AppError("vault_error", "Vault returned a non-object body", {"path": path})
        return body

    def get_secret(self, vault_id: str, path: str) -> str:
        self._require_configured()
        url_path = f"/v1/vaults/{quote(vault_id, safe='')}/secrets/{quote(path, safe='/')}"
        try:
            body = with_retry("vault_get_secret", lambda: self._get(url_path))
        except AppError as e:
            if e.code == "not_found":
                raise KeyNotFound(f"No secret at {path}", {"vault_id": vault_id, "key_path": path})
            raise
        value = body.get("value")
        if value is None:
            raise KeyNotFound(f"Secret at {path} has no value", {"vault_id": vault_id, "key_path": path})
        log_event("vault_secret_read", data={"vault_id": vault_id, "path": path}, level="debug")
        return str(value)

    def get_agent_config(self, agent_id: Optional[str] = None, *, refresh: bool = False) -> Dict[str, Any]:
        self._require_configured()
        aid = agent_id or self.agent_id
        key = f"agent:{aid}"
        if refresh:
            self._cache.delete(key)
        return self._cache.get_or_set(
            key,
            lambda: with_retry("vault_get_agent", lambda: self._get(f"/v1/agents/{quote(aid, safe='')}")),
            AGENT_CONFIG_TTL_SEC,
        )
