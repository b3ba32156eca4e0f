import dataclasses
import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest

from creditpay.errors import UnknownIntent, SnapshotMismatch, NoActiveSubscription, DailyCreditsAlreadyClaimed
from creditpay.models import CreditEntry, SettlementRecord, Subscription


def record_topup(ledger, resolver, intent_id="pi_1", user_id="user-1", credits=100):
    order = resolver.price_credit_topup(credits)
    ledger.record_intent(intent_id, user_id, order)
    return order


def test_settle_twice_grants_once(ledger, resolver, session_factory):
    order = record_topup(ledger, resolver)

    first = ledger.settle("pi_1", order.snapshot(), source="client")
    second = ledger.settle("pi_1", order.snapshot(), source="notification")

    assert first.already_settled is False
    assert second.already_settled is True
    assert first.credits_granted == second.credits_granted == 100
    assert ledger.balance("user-1") == 100

    db = session_factory()
    assert db.query(CreditEntry).filter_by(reference_id="pi_1").count() == 1
    assert db.get(SettlementRecord, "pi_1").source == "client"
    db.close()


def test_settle_unknown_intent(ledger, resolver):
    order = resolver.price_credit_topup(100)
    with pytest.raises(UnknownIntent):
        ledger.settle("pi_missing", order.snapshot(), source="client")


def test_settle_rejects_mismatched_snapshot(ledger, resolver):
    order = record_topup(ledger, resolver)
    tampered = dataclasses.replace(order.snapshot(), credit_amount=1000)

    with pytest.raises(SnapshotMismatch):
        ledger.settle("pi_1", tampered, source="client")

    assert ledger.get_settlement("pi_1") is None
    assert ledger.balance("user-1") == 0


def test_mismatched_snapshot_rejected_even_after_settlement(ledger, resolver):
    order = record_topup(ledger, resolver)
    ledger.settle("pi_1", order.snapshot(), source="client")

    with pytest.raises(SnapshotMismatch):
        ledger.settle("pi_1", dataclasses.replace(order.snapshot(), fee_amount=Decimal("0")), source="client")


def test_grant_uses_rate_captured_at_order_time(ledger, resolver, rates):
    record_topup(ledger, resolver, credits=100)
    rates.update(Decimal("12"))

    result = ledger.settle_recorded("pi_1", source="notification")

    assert result.credits_granted == 100
    assert ledger.balance("user-1") == 100


def test_subscription_activation_is_idempotent(ledger, resolver, session_factory):
    order = resolver.price_subscription("PRO")
    ledger.record_intent("pi_sub", "user-1", order)

    first = ledger.settle("pi_sub", order.snapshot(), source="notification")
    second = ledger.settle("pi_sub", order.snapshot(), source="client")

    assert first.subscription_activated == second.subscription_activated == "PRO"
    assert first.credits_granted == 0
    assert ledger.balance("user-1") == 0
    assert ledger.current_subscription("user-1")["tier"] == "PRO"

    db = session_factory()
    assert db.query(Subscription).filter_by(user_id="user-1").count() == 1
    db.close()


def test_concurrent_settle_creates_one_record(ledger, resolver, session_factory):
    order = record_topup(ledger, resolver)
    callers = 8
    barrier = threading.Barrier(callers)
    results, errors = [], []

    def settle(source):
        barrier.wait()
        try:
            results.append(ledger.settle("pi_1", order.snapshot(), source=source))
        except Exception as e:
            errors.append(e)

    threads = [
        threading.Thread(target=settle, args=("client" if i % 2 else "notification",))
        for i in range(callers)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == callers
    assert sum(1 for r in results if not r.already_settled) == 1
    assert {r.credits_granted for r in results} == {100}
    db = session_factory()
    assert db.query(SettlementRecord).filter_by(intent_id="pi_1").count() == 1
    db.close()
    assert ledger.balance("user-1") == 100


def test_mark_status_never_leaves_succeeded(ledger, resolver):
    record_topup(ledger, resolver)

    assert ledger.mark_status("pi_1", "processing")
    assert ledger.get_intent("pi_1").status == "processing"
    ledger.mark_status("pi_1", "succeeded")
    ledger.mark_status("pi_1", "requires_action")
    ledger.mark_status("pi_1", "failed")

    assert ledger.get_intent("pi_1").status == "succeeded"
    assert ledger.mark_status("pi_unknown", "failed") is False


def test_declined_intent_can_still_succeed(ledger, resolver):
    record_topup(ledger, resolver)

    ledger.mark_status("pi_1", "failed")
    ledger.mark_status("pi_1", "succeeded")

    assert ledger.get_intent("pi_1").status == "succeeded"


def test_unsettled_intents(ledger, resolver):
    settled = record_topup(ledger, resolver, intent_id="pi_settled")
    record_topup(ledger, resolver, intent_id="pi_failed")
    record_topup(ledger, resolver, intent_id="pi_pending")
    ledger.settle("pi_settled", settled.snapshot(), source="client")
    ledger.mark_status("pi_failed", "failed")

    # Declined intents stay candidates; the buyer may confirm them again
    assert ledger.unsettled_intents(older_than=timedelta(0)) == ["pi_failed", "pi_pending"]
    assert ledger.unsettled_intents(older_than=timedelta(hours=1)) == []


def test_fractional_rate_settles_with_its_own_snapshot(ledger, resolver, rates):
    rates.update(Decimal("10.1234567"))
    order = record_topup(ledger, resolver)

    result = ledger.settle("pi_1", order.snapshot(), source="client")

    assert order.exchange_rate_snapshot == Decimal("10.123457")
    assert result.already_settled is False
    assert ledger.balance("user-1") == 100


def activate(ledger, resolver, tier="STARTER", intent_id="pi_sub", user_id="user-1"):
    order = resolver.price_subscription(tier)
    ledger.record_intent(intent_id, user_id, order)
    ledger.settle(intent_id, order.snapshot(), source="client")


def test_claim_daily_once_per_day(ledger, resolver):
    activate(ledger, resolver, tier="PRO")

    claimed = ledger.claim_daily("user-1", today=date(2026, 3, 1))

    assert claimed == {"credited": 15, "claim_date": "2026-03-01", "new_balance": 15}
    with pytest.raises(DailyCreditsAlreadyClaimed):
        ledger.claim_daily("user-1", today=date(2026, 3, 1))
    assert ledger.claim_daily("user-1", today=date(2026, 3, 2))["new_balance"] == 30

    entries = ledger.entries("user-1")
    assert [e["reason"] for e in entries] == ["DAILY_CLAIM", "DAILY_CLAIM"]
    assert entries[0]["reference_id"] == "daily:user-1:2026-03-02"


def test_concurrent_daily_claims_credit_once(ledger, resolver):
    activate(ledger, resolver)
    callers = 6
    barrier = threading.Barrier(callers)
    outcomes = []

    def claim():
        barrier.wait()
        try:
            outcomes.append(ledger.claim_daily("user-1", today=date(2026, 3, 1))["credited"])
        except DailyCreditsAlreadyClaimed:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=claim) for _ in range(callers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes, key=str) == [5] + ["duplicate"] * (callers - 1)
    assert ledger.balance("user-1") == 5


def test_claim_daily_requires_subscription(ledger):
    with pytest.raises(NoActiveSubscription):
        ledger.claim_daily("user-1")


def test_cancelled_subscription_still_claims_until_period_ends(ledger, resolver):
    activate(ledger, resolver)

    sub = ledger.cancel_subscription("user-1")

    assert sub["status"] == "CANCELLED"
    assert sub["cancelled_at"] is not None
    assert sub["can_claim_today"] is True
    assert 29 <= sub["days_remaining"] <= 30
    assert ledger.claim_daily("user-1")["credited"] == 5
    assert ledger.current_subscription("user-1")["can_claim_today"] is False
    with pytest.raises(NoActiveSubscription):
        ledger.cancel_subscription("user-1")


def test_expired_subscription_is_not_current(ledger, resolver, session_factory):
    activate(ledger, resolver)
    db = session_factory()
    sub = db.query(Subscription).filter_by(user_id="user-1").one()
    sub.expires_at = sub.started_at - timedelta(days=1)
    db.commit()
    db.close()

    assert ledger.current_subscription("user-1") is None
    with pytest.raises(NoActiveSubscription):
        ledger.claim_daily("user-1")


def test_ledger_entries_newest_first(ledger, resolver):
    for n, credits in enumerate((10, 20, 30)):
        order = record_topup(ledger, resolver, intent_id=f"pi_{n}", credits=credits)
        ledger.settle(f"pi_{n}", order.snapshot(), source="client")

    entries = ledger.entries("user-1", page=1, per_page=2)

    assert [e["amount"] for e in entries] == [30, 20]
    assert entries[0]["reason"] == "CREDIT_PURCHASE"
    assert [e["amount"] for e in ledger.entries("user-1", page=2, per_page=2)] == [10]
    assert ledger.balance("user-1") == 60
    assert ledger.balance("someone-else") == 0
