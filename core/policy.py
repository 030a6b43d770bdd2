from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union

from core.models import TransactionIntent, parse_amount


def _parse_csv_set(value: Optional[str]) -> FrozenSet[str]:
    if not value:
        return frozenset()
    return frozenset(v.strip().lower() for v in value.split(",") if v.strip())


def _normalize_set(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    return frozenset(str(v).strip().lower() for v in (values or ()) if str(v).strip())


def _optional_amount(raw: Any, field_name: str) -> Optional[Decimal]:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw or raw.lower() == "unlimited":
            return None
    return parse_amount(raw, field_name=field_name)


def _json_amount(raw: Any) -> Any:
    # The vault returns JSON numbers; their shortest repr is the decimal the owner typed.
    return repr(raw) if isinstance(raw, float) else raw


@dataclass(frozen=True)
class GuardrailPolicy:
    """
    Human-configured guardrails for one signing identity.

    Empty allow-lists and `None` limits mean "no restriction". An empty destination
    allow-list is an open policy on purpose, not a deny-all.
    """

    allowed_chains: FrozenSet[str] = field(default_factory=frozenset)
    allowed_destinations: FrozenSet[str] = field(default_factory=frozenset)
    max_value_per_tx: Optional[Decimal] = None
    daily_spend_limit: Optional[Decimal] = None

    @classmethod
    def build(
        cls,
        *,
        chains: Optional[Iterable[str]] = None,
        destinations: Optional[Iterable[str]] = None,
        max_per_tx: Any = None,
        daily_limit: Any = None,
    ) -> "GuardrailPolicy":
        return cls(
            allowed_chains=_normalize_set(chains),
            allowed_destinations=_normalize_set(destinations),
            max_value_per_tx=_optional_amount(max_per_tx, "max_value_per_tx"),
            daily_spend_limit=_optional_amount(daily_limit, "daily_spend_limit"),
        )

    @classmethod
    def from_env(cls) -> "GuardrailPolicy":
        """
        Env:
        - ALLOW_CHAINS (csv chain names)
        - ALLOW_TO_ADDRESSES (csv addresses)
        - MAX_VALUE_PER_TX_ETH (decimal)
        - DAILY_SPEND_LIMIT_ETH (decimal)
        """
        return cls(
            allowed_chains=_parse_csv_set(os.getenv("ALLOW_CHAINS")),
            allowed_destinations=_parse_csv_set(os.getenv("ALLOW_TO_ADDRESSES")),
            max_value_per_tx=_optional_amount(os.getenv("MAX_VALUE_PER_TX_ETH"), "MAX_VALUE_PER_TX_ETH"),
            daily_spend_limit=_optional_amount(os.getenv("DAILY_SPEND_LIMIT_ETH"), "DAILY_SPEND_LIMIT_ETH"),
        )

    @classmethod
    def from_agent_config(cls, info: Dict[str, Any]) -> "GuardrailPolicy":
        """Map the vault's agent record (`tx_*` fields) into a policy."""
        return cls.build(
            chains=info.get("tx_allowed_chains") or (),
            destinations=info.get("tx_to_allowlist") or (),
            max_per_tx=_json_amount(info.get("tx_max_value_eth")),
            daily_limit=_json_amount(info.get("tx_daily_limit_eth")),
        )

    def snapshot(self) -> Dict[str, Any]:
        return {
            "allowed_chains": sorted(self.allowed_chains),
            "allowed_destinations": sorted(self.allowed_destinations),
            "max_value_per_tx_eth": str(self.max_value_per_tx) if self.max_value_per_tx is not None else "unlimited",
            "daily_spend_limit_eth": str(self.daily_spend_limit) if self.daily_spend_limit is not None else "unlimited",
        }


@dataclass(frozen=True)
class Allow:
    allowed: bool = True


@dataclass(frozen=True)
class Deny:
    rule: str
    reason: str
    data: Dict[str, Any] = field(default_factory=dict)
    allowed: bool = False


Decision = Union[Allow, Deny]


class Rule:
    CHAIN = "chain_not_allowed"
    DESTINATION = "destination_not_allowed"
    PER_TX_LIMIT = "max_value_per_tx_exceeded"
    DAILY_LIMIT = "daily_limit_exceeded"
    INTENTS_DISABLED = "intents_disabled"


def evaluate(intent: TransactionIntent, policy: GuardrailPolicy, recent_spend: Decimal) -> Decision:
    """
    Deterministic deny layer. Rules run in a fixed order and the first failure wins:
    chain, destination, per-transaction ceiling, rolling daily limit.

    Pure: no I/O, no mutation. The caller supplies `recent_spend` from the identity's ledger.
    """
    chain_l = intent.chain.strip().lower()
    value = intent.value_decimal

    if policy.allowed_chains and chain_l not in policy.allowed_chains:
        return Deny(
            rule=Rule.CHAIN,
            reason=f"Chain '{intent.chain}' is not permitted for this identity.",
            data={"chain": intent.chain, "allowed_chains": sorted(policy.allowed_chains)},
        )

    if policy.allowed_destinations and intent.to.strip().lower() not in policy.allowed_destinations:
        return Deny(
            rule=Rule.DESTINATION,
            reason=f"Destination {intent.to} is not permitted (not on the allow-list).",
            data={"to": intent.to, "allowed_destinations": sorted(policy.allowed_destinations)},
        )

    if policy.max_value_per_tx is not None and value > policy.max_value_per_tx:
        return Deny(
            rule=Rule.PER_TX_LIMIT,
            reason=f"Value {value} exceeds the per-transaction limit of {policy.max_value_per_tx}.",
            data={"value": str(value), "max_value_per_tx": str(policy.max_value_per_tx)},
        )

    if policy.daily_spend_limit is not None and recent_spend + value > policy.daily_spend_limit:
        return Deny(
            rule=Rule.DAILY_LIMIT,
            reason=(
                f"Value {value} would exceed the daily limit of {policy.daily_spend_limit} "
                f"({recent_spend} already spent in the current window)."
            ),
            data={
                "value": str(value),
                "recent_spend": str(recent_spend),
                "daily_spend_limit": str(policy.daily_spend_limit),
            },
        )

    return Allow()
