"""
Retry helpers for pre-signing reads.

Only vault reads (auth token, agent config, key lookup) go through here. Nothing after a
signature exists is ever retried: re-signing or rebroadcasting risks a double spend.
"""

from __future__ import annotations

import os
import random
import time
from typing import Callable, TypeVar

import requests

from common.errors import AppError, classify_exception

T = TypeVar("T")


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name) or "").strip() or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float((os.getenv(name) or "").strip() or default)
    except ValueError:
        return default


def should_retry(e: Exception) -> bool:
    if isinstance(e, AppError):
        return e.code in {"timeout", "network_error", "rate_limited"}
    if isinstance(e, (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)):
        return True
    if isinstance(e, requests.HTTPError) and e.response is not None:
        return e.response.status_code >= 500 or e.response.status_code == 429
    err_str = str(e).lower()
    return any(k in err_str for k in ["timeout", "network", "connection", "rate limit", "temporarily unavailable"])


def with_retry(op: str, fn: Callable[[], T]) -> T:
    """
    Run `fn` with exponential backoff and jitter on transient errors.

    AppErrors that are not transient (KeyNotFound, auth failures) propagate untouched on the
    first attempt. Other exceptions are classified into an AppError after the final attempt.

    Env tuning:
    - VAULT_RETRY_MAX_ATTEMPTS (default 3)
    - VAULT_RETRY_BASE_DELAY_SEC (default 0.5)
    - VAULT_RETRY_MAX_DELAY_SEC (default 5.0)
    """
    max_attempts = max(1, _env_int("VAULT_RETRY_MAX_ATTEMPTS", 3))
    base = max(0.05, _env_float("VAULT_RETRY_BASE_DELAY_SEC", 0.5))
    max_delay = max(base, _env_float("VAULT_RETRY_MAX_DELAY_SEC", 5.0))

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if not should_retry(e) or attempt >= max_attempts:
                if isinstance(e, AppError) and not should_retry(e):
                    raise
                ae = classify_exception(e)
                raise AppError(
                    ae.code,
                    f"{op} failed after {attempt} attempt(s): {ae.message}",
                    {"attempts": attempt, "op": op},
                ) from e
            delay = min(max_delay, base * (2 ** (attempt - 1)))
            jitter = 0.5 + (random.random() * 0.5)
            time.sleep(delay * jitter)
