import os
from datetime import datetime

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ["SKIP_MIGRATIONS"] = "1"

from app.core.ledger import (  # noqa: E402
    apply_commission,
    drain_pending_reversal,
    mark_fraudulent,
    reconcile_referrer,
    retry_pending_reversals,
    reverse_commission,
    settle_payout_batch,
)
from app.core.referral_errors import InvalidReversalReason, LedgerEventNotFound  # noqa: E402
from app.crud.ledger import get_marker, get_pending_reversal, list_audit_entries  # noqa: E402
from app.crud.referrers import get_referrer  # noqa: E402
from app.models.ledger import CommissionLedgerEvent  # noqa: E402
from tests.factories import make_order, make_referrer, make_snapshot, setup_db  # noqa: E402


JAN = datetime(2026, 1, 10, 10, 0, 0)


def test_reversal_restores_unpaid_balance_and_revenue():
    SessionLocal = setup_db("reversal_basic")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        keep = make_order(order_amount=2_000_000, finalized_at=JAN)
        order = make_order(order_amount=1_000_000, finalized_at=JAN)
        apply_commission(db, keep, referrer.id, policy)
        earned = apply_commission(db, order, referrer.id, policy).event

        result = reverse_commission(db, order.order_id, "order_returned", policy, actor="support")

        assert result.outcome == "reversed"
        assert result.event.event_kind == "reversed"
        assert result.event.amount == -earned.amount
        assert result.event.reverses_event_id == earned.id
        assert result.event.requires_review is False
        assert result.original.reversed is True
        assert result.original.reversal_reason == "order_returned"
        refreshed = get_referrer(db, referrer_id=referrer.id)
        assert refreshed.unpaid_commission == 20_000
        assert refreshed.current_month_revenue == 2_000_000
        assert refreshed.lifetime_revenue == 2_000_000
        marker = get_marker(db, order_id=order.order_id)
        assert marker.reversal_reason == "order_returned"
        assert marker.reversed_at is not None
        entry = list_audit_entries(db, referrer_id=referrer.id)[0]
        assert entry.action == "commission_reversed"
        assert entry.actor == "support"
        assert entry.amount == -earned.amount
        assert reconcile_referrer(db, referrer_id=referrer.id).ok


def test_second_reversal_returns_existing_event():
    SessionLocal = setup_db("reversal_twice")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        order = make_order(order_amount=1_000_000, finalized_at=JAN)
        apply_commission(db, order, referrer.id, policy)

        first = reverse_commission(db, order.order_id, "order_cancelled", policy)
        second = reverse_commission(db, order.order_id, "order_returned", policy)

        assert second.outcome == "already_reversed"
        assert second.event.id == first.event.id
        assert db.query(CommissionLedgerEvent).filter(CommissionLedgerEvent.event_kind == "reversed").count() == 1
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 0


def test_reversed_order_is_never_re_earned():
    SessionLocal = setup_db("reversal_refinalize")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        order = make_order(order_amount=1_000_000, finalized_at=JAN)
        apply_commission(db, order, referrer.id, policy)
        reverse_commission(db, order.order_id, "order_cancelled", policy)

        again = apply_commission(db, order, referrer.id, policy)

        assert again.outcome == "already_processed"
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 0


def test_unknown_reason_is_rejected():
    SessionLocal = setup_db("reversal_reason")
    policy = make_snapshot()
    with SessionLocal() as db:
        with pytest.raises(InvalidReversalReason):
            reverse_commission(db, "ord_1", "changed_mind", policy)


def test_reversal_before_commission_is_held_and_applied_later():
    SessionLocal = setup_db("reversal_pending")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        order = make_order(order_amount=1_000_000, finalized_at=JAN)

        early = reverse_commission(db, order.order_id, "order_cancelled", policy)
        assert early.outcome == "noop"
        assert early.pending.status == "pending"

        apply_commission(db, order, referrer.id, policy)
        drained = drain_pending_reversal(db, order_id=order.order_id, policy=policy)

        assert drained.outcome == "reversed"
        assert get_pending_reversal(db, order_id=order.order_id).status == "applied"
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 0
        assert reconcile_referrer(db, referrer_id=referrer.id).ok


def test_pending_reversals_expire_after_max_attempts():
    SessionLocal = setup_db("reversal_expire")
    policy = make_snapshot()
    with SessionLocal() as db:
        reverse_commission(db, "ord_never_arrives", "order_cancelled", policy)

        first = retry_pending_reversals(db, policy=policy, max_attempts=2)
        second = retry_pending_reversals(db, policy=policy, max_attempts=2)

        assert first == {"applied": 0, "waiting": 1, "expired": 0}
        assert second == {"applied": 0, "waiting": 0, "expired": 1}
        assert get_pending_reversal(db, order_id="ord_never_arrives").status == "expired"


def test_pending_sweep_applies_intent_once_commission_lands():
    SessionLocal = setup_db("reversal_sweep")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        order = make_order(order_amount=1_000_000, finalized_at=JAN)
        reverse_commission(db, order.order_id, "order_returned", policy)
        apply_commission(db, order, referrer.id, policy)

        counts = retry_pending_reversals(db, policy=policy)

        assert counts["applied"] == 1
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 0


def test_reversing_paid_event_flags_for_review():
    SessionLocal = setup_db("reversal_paid_flag")
    policy = make_snapshot(reversal_clawback_mode="flag_for_review")
    with SessionLocal() as db:
        referrer = make_referrer(db)
        order = make_order(order_amount=1_000_000, finalized_at=JAN)
        apply_commission(db, order, referrer.id, policy)
        settle_payout_batch(db, policy=policy, actor="finance")

        result = reverse_commission(db, order.order_id, "order_returned", policy)

        assert result.event.requires_review is True
        assert result.shortfall == 10_000
        refreshed = get_referrer(db, referrer_id=referrer.id)
        assert refreshed.unpaid_commission == 0
        assert refreshed.paid_commission == 10_000
        assert refreshed.clawback_due == 10_000
        assert reconcile_referrer(db, referrer_id=referrer.id).ok


def test_auto_clawback_lets_unpaid_go_negative():
    SessionLocal = setup_db("reversal_paid_auto")
    policy = make_snapshot(reversal_clawback_mode="auto_clawback")
    with SessionLocal() as db:
        referrer = make_referrer(db)
        order = make_order(order_amount=1_000_000, finalized_at=JAN)
        apply_commission(db, order, referrer.id, policy)
        settle_payout_batch(db, policy=policy, actor="finance")

        result = reverse_commission(db, order.order_id, "order_returned", policy)

        assert result.event.requires_review is False
        refreshed = get_referrer(db, referrer_id=referrer.id)
        assert refreshed.unpaid_commission == -10_000
        assert refreshed.clawback_due == 0
        assert reconcile_referrer(db, referrer_id=referrer.id).ok

        apply_commission(db, make_order(order_amount=3_000_000, finalized_at=JAN), referrer.id, policy)
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 20_000


def test_mark_fraudulent_reverses_and_raises_fraud_score():
    SessionLocal = setup_db("reversal_fraud")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        order = make_order(order_amount=1_000_000, finalized_at=JAN)
        event = apply_commission(db, order, referrer.id, policy).event

        result = mark_fraudulent(db, event_id=event.id, policy=policy, actor="risk", reason="fake orders")

        assert result.outcome == "reversed"
        assert result.event.reversal_reason == "fraud_detected"
        refreshed = get_referrer(db, referrer_id=referrer.id)
        assert refreshed.fraud_score == 25
        actions = [entry.action for entry in list_audit_entries(db, referrer_id=referrer.id)]
        assert "fraud_marked" in actions
        assert "commission_reversed" in actions

        again = mark_fraudulent(db, event_id=event.id, policy=policy, actor="risk")
        assert again.outcome == "already_reversed"
        assert get_referrer(db, referrer_id=referrer.id).fraud_score == 25

        with pytest.raises(LedgerEventNotFound):
            mark_fraudulent(db, event_id=9999, policy=policy, actor="risk")


def test_fraud_score_is_capped_at_100():
    SessionLocal = setup_db("reversal_fraud_cap")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        referrer.fraud_score = 90
        db.commit()
        event = apply_commission(db, make_order(finalized_at=JAN), referrer.id, policy).event

        mark_fraudulent(db, event_id=event.id, policy=policy, actor="risk")

        assert get_referrer(db, referrer_id=referrer.id).fraud_score == 100
