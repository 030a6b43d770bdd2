from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from common.errors import AppError
from core.ledger import SpendLedger
from core.policy import GuardrailPolicy

DEFAULT_KEY_PATH_TEMPLATE = "keys/{chain}-signer"

ACTOR_OWNER = "owner"
ACTOR_AGENT = "agent"


@dataclass
class SigningIdentity:
    """
    A signing identity: one vault, one key per chain, one active guardrail policy.

    `policy` is swapped as a whole reference under the registry lock; readers always see
    either the old or the new policy, never a mix.
    """

    identity_id: str
    vault_id: str
    policy: GuardrailPolicy
    key_path_template: str = DEFAULT_KEY_PATH_TEMPLATE
    intents_enabled: bool = True
    active: bool = True
    ledger: SpendLedger = field(default_factory=SpendLedger)
    # Serializes recent-spend -> evaluate -> resolve -> sign -> ledger commit for this identity only.
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def key_path(self, chain: str) -> str:
        return self.key_path_template.format(chain=chain)

    def guardrail_snapshot(self) -> Dict[str, Any]:
        snap = self.policy.snapshot()
        snap["intents_api_enabled"] = bool(self.intents_enabled)
        return snap

    def summary(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "vault_id": self.vault_id,
            "key_path_template": self.key_path_template,
            "active": self.active,
            "spend_window": self.ledger.window_mode,
            "guardrails": self.guardrail_snapshot(),
        }


class IdentityRegistry:
    def __init__(self, *, window_mode: str = "rolling", window_seconds: int = 86400) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, SigningIdentity] = {}
        self._window_mode = window_mode
        self._window_seconds = window_seconds

    def register(
        self,
        *,
        identity_id: str,
        vault_id: str,
        policy: Optional[GuardrailPolicy] = None,
        key_path_template: str = DEFAULT_KEY_PATH_TEMPLATE,
        intents_enabled: bool = True,
    ) -> SigningIdentity:
        identity_id = (identity_id or "").strip()
        if not identity_id:
            raise AppError("invalid_identity", "identity_id is required", {})
        if not (key_path_template or "").strip():
            raise AppError("invalid_identity", "key_path_template is required", {})
        ident = SigningIdentity(
            identity_id=identity_id,
            vault_id=vault_id,
            policy=policy or GuardrailPolicy(),
            key_path_template=key_path_template,
            intents_enabled=intents_enabled,
            ledger=SpendLedger(window_mode=self._window_mode, window_seconds=self._window_seconds),
        )
        with self._lock:
            existing = self._items.get(identity_id)
            if existing is not None and existing.active:
                raise AppError("identity_exists", f"Identity already registered: {identity_id}", {"identity_id": identity_id})
            self._items[identity_id] = ident
        return ident

    def get(self, identity_id: str) -> SigningIdentity:
        with self._lock:
            ident = self._items.get(identity_id)
        if ident is None:
            raise AppError("not_found", f"Unknown signing identity: {identity_id}", {"identity_id": identity_id})
        return ident

    def list_identities(self) -> List[SigningIdentity]:
        with self._lock:
            return list(self._items.values())

    def deregister(self, identity_id: str) -> bool:
        """
        Invalidate the identity's key reference. The key itself stays in the vault; any later
        resolution for this identity fails with KeyNotFound.
        """
        with self._lock:
            ident = self._items.get(identity_id)
            if ident is None or not ident.active:
                return False
            ident.active = False
            return True

    def replace_policy(self, identity_id: str, policy: GuardrailPolicy, *, actor: str) -> GuardrailPolicy:
        """Atomically replace the active guardrail policy. Only the owner may do this."""
        if (actor or "").strip().lower() != ACTOR_OWNER:
            raise AppError(
                "forbidden",
                "Only the identity owner may replace guardrails.",
                {"identity_id": identity_id, "actor": actor},
            )
        ident = self.get(identity_id)
        with self._lock:
            previous = ident.policy
            ident.policy = policy
        return previous

    def apply_agent_config(self, identity_id: str, info: Dict[str, Any]) -> SigningIdentity:
        """Refresh guardrails from the vault's agent record (the owner configured them there)."""
        ident = self.get(identity_id)
        policy = GuardrailPolicy.from_agent_config(info)
        with self._lock:
            ident.policy = policy
            if "intents_api_enabled" in info:
                ident.intents_enabled = bool(info.get("intents_api_enabled"))
        return ident
