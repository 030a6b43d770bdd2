from __future__ import annotations

import contextvars
import json
import os
import time
import uuid
from typing import Any, Dict, Optional

_CURRENT_CTX: contextvars.ContextVar[Optional[Dict[str, Any]]] = contextvars.ContextVar(
    "guarded_signer_log_ctx",
    default=None,
)


def get_current_context() -> Optional[Dict[str, Any]]:
    return _CURRENT_CTX.get()


def set_current_context(ctx: Optional[Dict[str, Any]]) -> None:
    _CURRENT_CTX.set(ctx)


_LEVELS = {"debug": 10, "info": 20, "warn": 30, "warning": 30, "error": 40}


def _level_value(level: str) -> int:
    return _LEVELS.get(str(level or "").strip().lower(), 20)


def _min_level_value() -> int:
    # Prefer explicit GUARDED_SIGNER_LOG_LEVEL, fallback to LOG_LEVEL.
    raw = (os.getenv("GUARDED_SIGNER_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "info").strip().lower()
    return _level_value(raw)


_SENSITIVE_KEYWORDS = (
    "secret",
    "password",
    "token",
    "private",
    "mnemonic",
    "api_key",
    "apikey",
    "seed",
    "key_material",
    "key_handle",
)


def redact(value: Any) -> Any:
    """
    Recursive redaction for log payloads.

    Key material must never reach a log line; this is the last filter, not the only one.
    """
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            ks = str(k).lower()
            if any(x in ks for x in _SENSITIVE_KEYWORDS):
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(value, (list, tuple)):
        return [redact(x) for x in value]
    return value


def build_log_context(
    *,
    tool: str,
    request_id: str | None = None,
    identity_id: str | None = None,
) -> Dict[str, Any]:
    """
    Build a per-invocation context object for structured logs.
    """
    ctx = {
        "tool": tool,
        "request_id": str(request_id or uuid.uuid4()),
        "ts_ms": int(time.time() * 1000),
        "service": os.getenv("GUARDED_SIGNER_SERVICE_NAME", "guarded-signer"),
    }
    if identity_id:
        ctx["identity_id"] = str(identity_id)
    return ctx


def log_event(
    event: str,
    *,
    ctx: Optional[Dict[str, Any]] = None,
    data: Optional[Dict[str, Any]] = None,
    level: str = "info",
) -> None:
    """
    Emit a single-line JSON log event to stdout.

    When `ctx` is omitted the context of the current tool invocation is used.
    """
    if _level_value(level) < _min_level_value():
        return
    payload = dict(ctx or get_current_context() or {})
    payload["level"] = str(level).upper()
    payload["event"] = event
    if data:
        payload["data"] = redact(data)
    print(json.dumps(payload, sort_keys=True, default=str))
