from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class AppError(Exception):
    code: str
    message: str
    data: Dict[str, Any]

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidIntent(AppError):
    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__("invalid_intent", message, data or {})


class GuardrailDenied(AppError):
    """
    Expected, user-facing denial. `rule` names the guardrail that failed
    (chain / destination / per-tx limit / daily limit / intents disabled).
    """

    def __init__(self, rule: str, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__("guardrail_denied", message, {"rule": rule, **(data or {})})
        self.rule = rule


class KeyNotFound(AppError):
    def __init__(self, message: str = "No signing key provisioned", data: Optional[Dict[str, Any]] = None):
        super().__init__("key_not_found", message, data or {})


class SigningError(AppError):
    def __init__(self, message: str = "Signing failed", data: Optional[Dict[str, Any]] = None):
        super().__init__("signing_error", message, data or {})


class SimulationUnavailable(AppError):
    def __init__(self, message: str = "Simulation service unavailable", data: Optional[Dict[str, Any]] = None):
        super().__init__("simulation_unavailable", message, data or {})


class BroadcastError(AppError):
    def __init__(
        self,
        message: str = "Broadcast failed",
        data: Optional[Dict[str, Any]] = None,
        *,
        timed_out: bool = False,
    ):
        super().__init__("broadcast_error", message, {"timed_out": timed_out, **(data or {})})
        self.timed_out = timed_out


class ConfirmationTimeout(AppError):
    """
    Not a transaction failure: the receipt wait ran out. The transaction may still land.
    """

    def __init__(self, message: str = "Confirmation status unknown, check later", data: Optional[Dict[str, Any]] = None):
        super().__init__("confirmation_timeout", message, data or {})


def classify_exception(e: Exception) -> AppError:
    """
    Map raw adapter failures (requests / web3 / vault) into stable error codes.
    """
    if isinstance(e, AppError):
        return e

    err_str = str(e).lower()

    if "rate limit" in err_str or "429" in err_str:
        return AppError("rate_limited", str(e), {})
    if "timeout" in err_str or "timed out" in err_str:
        return AppError("timeout", str(e), {})
    if "api key" in err_str or "unauthorized" in err_str or "forbidden" in err_str or "401" in err_str:
        return AppError("auth_error", str(e), {})
    if "not found" in err_str or "404" in err_str:
        return AppError("not_found", str(e), {})
    if "network" in err_str or "connection" in err_str:
        return AppError("network_error", str(e), {})

    return AppError("unknown_error", str(e), {})
