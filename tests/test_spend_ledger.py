from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.ledger import SpendLedger
from core.models import FailureKind, TransactionIntent, TransactionRecord, TxStatus

DEAD = "0x000000000000000000000000000000000000dEaD"


def test_recent_spend_is_sum_of_charges_within_window():
    ledger = SpendLedger(window_seconds=3600)
    now = 1_700_000_000.0
    values = ["0.001", "0.0025", "0.0005"]
    for i, v in enumerate(values):
        ledger.charge(f"tx_{i}", Decimal(v), at=now - 10 * i)
    assert ledger.recent_spend(now) == sum(Decimal(v) for v in values)


def test_rolling_window_expires_old_charges():
    ledger = SpendLedger(window_seconds=3600)
    now = 1_700_000_000.0
    ledger.charge("old", Decimal("1"), at=now - 3601)
    ledger.charge("new", Decimal("0.5"), at=now - 10)
    assert ledger.recent_spend(now) == Decimal("0.5")
    assert len(ledger) == 1


def test_charge_drops_entries_that_fell_out_of_the_window():
    ledger = SpendLedger(window_seconds=3600)
    now = 1_700_000_000.0
    ledger.charge("a", Decimal("1"), at=now - 4000)
    ledger.charge("b", Decimal("1"), at=now - 3000)
    assert len(ledger) == 2

    ledger.charge("c", Decimal("0.5"), at=now)
    assert len(ledger) == 2
    assert ledger.recent_spend(now) == Decimal("1.5")


def test_calendar_day_resets_at_utc_midnight():
    ledger = SpendLedger(window_mode="calendar_day")
    midnight = datetime(2026, 3, 2, tzinfo=timezone.utc).timestamp()
    ledger.charge("yesterday", Decimal("1"), at=midnight - 60)
    ledger.charge("today", Decimal("0.25"), at=midnight + 60)
    assert len(ledger) == 1
    assert ledger.recent_spend(midnight + 3600) == Decimal("0.25")


def test_charge_twice_for_same_record_is_refused():
    ledger = SpendLedger()
    ledger.charge("tx_1", Decimal("1"))
    with pytest.raises(ValueError):
        ledger.charge("tx_1", Decimal("1"))


def test_release_undoes_charge():
    ledger = SpendLedger()
    ledger.charge("tx_1", Decimal("1"))
    assert ledger.release("tx_1") is True
    assert ledger.release("tx_1") is False
    assert ledger.recent_spend() == Decimal("0")


def test_unknown_window_mode_rejected():
    with pytest.raises(ValueError):
        SpendLedger(window_mode="weekly")


def test_rebuild_counts_only_signed_records():
    def rec(value):
        return TransactionRecord.from_intent(TransactionIntent(to=DEAD, value=value, chain="base"), identity_id="a")

    confirmed = rec("0.1")
    confirmed.advance(TxStatus.SIGNED)
    confirmed.advance(TxStatus.BROADCAST)
    confirmed.advance(TxStatus.CONFIRMED)

    blocked = rec("5")
    blocked.advance(TxStatus.BLOCKED, block_rule="chain_not_allowed", block_reason="x")

    gated = rec("0.2")
    gated.advance(TxStatus.SIGNED)
    gated.advance(TxStatus.FAILED, failure_kind=FailureKind.SIMULATION_GATE)

    timed_out = rec("0.3")
    timed_out.advance(TxStatus.SIGNED)
    timed_out.advance(TxStatus.FAILED, failure_kind=FailureKind.TIMED_OUT)

    ledger = SpendLedger()
    assert ledger.rebuild([confirmed, blocked, gated, timed_out]) == 2
    assert ledger.recent_spend() == Decimal("0.4")
