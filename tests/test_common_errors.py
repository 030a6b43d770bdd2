from common.errors import (
    AppError,
    BroadcastError,
    ConfirmationTimeout,
    GuardrailDenied,
    KeyNotFound,
    SimulationUnavailable,
    classify_exception,
)


def test_app_error_basics():
    e = AppError("code", "msg", {"a": 1})
    assert e.code == "code"
    assert e.message == "msg"
    assert e.data["a"] == 1
    assert str(e) == "code: msg"


def test_special_errors():
    e = GuardrailDenied("chain_not_allowed", "nope", {"chain": "polygon"})
    assert e.code == "guardrail_denied"
    assert e.rule == "chain_not_allowed"
    assert e.data == {"rule": "chain_not_allowed", "chain": "polygon"}

    assert KeyNotFound().code == "key_not_found"
    assert SimulationUnavailable().code == "simulation_unavailable"

    b = BroadcastError("rpc hung", timed_out=True)
    assert b.code == "broadcast_error"
    assert b.timed_out is True
    assert b.data["timed_out"] is True

    assert ConfirmationTimeout().code == "confirmation_timeout"


def test_classify_exception():
    e = AppError("c", "m", {})
    assert classify_exception(e) is e

    assert classify_exception(Exception("Rate limit 429")).code == "rate_limited"
    assert classify_exception(Exception("Connection timeout")).code == "timeout"
    assert classify_exception(Exception("401 Unauthorized")).code == "auth_error"
    assert classify_exception(Exception("Secret not found")).code == "not_found"
    assert classify_exception(Exception("Network error")).code == "network_error"
    assert classify_exception(Exception("Whoops")).code == "unknown_error"
