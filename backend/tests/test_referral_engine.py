import os
from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ["SKIP_MIGRATIONS"] = "1"

import app.core.referral_notifications as referral_notifications  # noqa: E402
from app.core.ledger import reconcile_referrer, reverse_commission  # noqa: E402
from app.core.attribution import CustomerIdentity  # noqa: E402
from app.core.referral_engine import (  # noqa: E402
    on_customer_registered,
    on_order_finalized,
    on_order_reversed,
    on_referral_code_applied,
)
from app.core.referral_errors import InvalidCode, ProgramDisabled  # noqa: E402
from app.core.time import utcnow  # noqa: E402
from app.crud.notifications import list_notifications_for_referrer  # noqa: E402
from app.crud.referrers import get_attribution_for_customer, get_referrer  # noqa: E402
from app.models.ledger import CommissionLedgerEvent  # noqa: E402
from tests.factories import make_link, make_order, make_referrer, make_snapshot, setup_db  # noqa: E402


def test_disabled_program_skips_everything():
    SessionLocal = setup_db("engine_disabled")
    with SessionLocal() as db:
        make_referrer(db, code="ref_alice")
        outcome = on_order_finalized(
            db,
            make_order(referral_code="ref_alice"),
            policy=make_snapshot(is_enabled=False),
        )
        assert outcome.outcome == "program_disabled"
        assert outcome.event is None
        assert db.query(CommissionLedgerEvent).count() == 0


def test_order_without_link_or_code_is_not_referred():
    SessionLocal = setup_db("engine_not_referred")
    with SessionLocal() as db:
        outcome = on_order_finalized(db, make_order(), policy=make_snapshot())
        assert outcome.outcome == "not_referred"


def test_first_order_with_code_attributes_and_earns():
    SessionLocal = setup_db("engine_first_order")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db, code="ref_alice")
        order = make_order(customer_email="buyer@example.com", referral_code="REF_ALICE", order_amount=1_000_000)

        outcome = on_order_finalized(db, order, policy=policy)

        assert outcome.outcome == "applied"
        assert outcome.referrer_id == referrer.id
        assert outcome.event.amount == 10_000
        link = get_attribution_for_customer(db, customer_email="buyer@example.com")
        assert link.referrer_id == referrer.id
        assert link.locked is True
        earned = list_notifications_for_referrer(db, referrer_id=referrer.id, kind="commission_earned")
        assert len(earned) == 1
        assert earned[0].dedupe_key == f"commission_earned:{outcome.event.id}"
        assert earned[0].payload_json["amount"] == 10_000


def test_locked_link_wins_over_new_code():
    SessionLocal = setup_db("engine_locked")
    policy = make_snapshot(allow_code_change_before_first_order=True)
    with SessionLocal() as db:
        first = make_referrer(db, code="ref_first")
        make_referrer(db, code="ref_second")
        make_link(db, referrer=first, customer_email="buyer@example.com", locked=True)

        outcome = on_order_finalized(
            db,
            make_order(customer_email="buyer@example.com", referral_code="ref_second"),
            policy=policy,
        )

        assert outcome.referrer_id == first.id


def test_unknown_code_on_first_order_raises():
    SessionLocal = setup_db("engine_bad_code")
    with SessionLocal() as db:
        with pytest.raises(InvalidCode):
            on_order_finalized(db, make_order(referral_code="ref_nobody"), policy=make_snapshot())


def test_suspended_referrer_earns_nothing():
    SessionLocal = setup_db("engine_suspended")
    with SessionLocal() as db:
        referrer = make_referrer(db, status="suspended")
        make_link(db, referrer=referrer, customer_email="buyer@example.com")

        outcome = on_order_finalized(db, make_order(customer_email="buyer@example.com"), policy=make_snapshot())

        assert outcome.outcome == "referrer_inactive"
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 0


def test_validity_window_is_enforced():
    SessionLocal = setup_db("engine_window")
    policy = make_snapshot(referral_validity_days=30)
    with SessionLocal() as db:
        referrer = make_referrer(db)
        make_link(
            db,
            referrer=referrer,
            customer_email="old@example.com",
            attributed_at=utcnow() - timedelta(days=40),
        )
        make_link(
            db,
            referrer=referrer,
            customer_email="recent@example.com",
            attributed_at=utcnow() - timedelta(days=10),
        )

        stale = on_order_finalized(db, make_order(customer_email="old@example.com"), policy=policy)
        fresh = on_order_finalized(db, make_order(customer_email="recent@example.com"), policy=policy)
        unlimited = on_order_finalized(
            db,
            make_order(customer_email="old@example.com"),
            policy=make_snapshot(referral_validity_days=0),
        )

        assert stale.outcome == "outside_validity_window"
        assert fresh.outcome == "applied"
        assert unlimited.outcome == "applied"


def test_held_reversal_is_drained_on_arrival():
    SessionLocal = setup_db("engine_drain")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        make_link(db, referrer=referrer, customer_email="buyer@example.com")
        order = make_order(customer_email="buyer@example.com", order_amount=9_000_000)
        reverse_commission(db, order.order_id, "order_cancelled", policy)

        outcome = on_order_finalized(db, order, policy=policy)

        assert outcome.outcome == "applied"
        assert outcome.reversal.reversed is True
        assert outcome.tier_progress is None
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 0
        assert reconcile_referrer(db, referrer_id=referrer.id).ok


def test_tier_progress_notification_after_commit():
    SessionLocal = setup_db("engine_tier")
    policy = make_snapshot(tier_progress_threshold=0.8)
    with SessionLocal() as db:
        referrer = make_referrer(db)
        make_link(db, referrer=referrer, customer_email="buyer@example.com")

        outcome = on_order_finalized(
            db,
            make_order(customer_email="buyer@example.com", order_amount=8_500_000),
            policy=policy,
        )

        assert outcome.tier_progress.notified is True
        progress = list_notifications_for_referrer(db, referrer_id=referrer.id, kind="tier_progress")
        assert len(progress) == 1


def test_notification_failure_does_not_undo_commission(monkeypatch):
    SessionLocal = setup_db("engine_notify_fail")
    policy = make_snapshot()

    def _broken(*_args, **_kwargs):
        raise SQLAlchemyError("outbox unavailable")

    monkeypatch.setattr(referral_notifications, "create_notification", _broken)
    with SessionLocal() as db:
        referrer = make_referrer(db)
        make_link(db, referrer=referrer, customer_email="buyer@example.com")

        outcome = on_order_finalized(
            db,
            make_order(customer_email="buyer@example.com", order_amount=8_500_000),
            policy=policy,
        )

        assert outcome.outcome == "applied"
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 85_000
        assert db.query(CommissionLedgerEvent).count() == 1
        assert list_notifications_for_referrer(db, referrer_id=referrer.id) == []


def test_fraud_evaluation_on_write_flags_referrer():
    SessionLocal = setup_db("engine_fraud")
    policy = make_snapshot(evaluate_fraud_on_write=True, fraud_rules={"shared_phone": {"weight": 60}})
    with SessionLocal() as db:
        referrer = make_referrer(db)
        for index in range(2):
            email = f"buyer{index}@example.com"
            make_link(db, referrer=referrer, customer_email=email)
            on_order_finalized(db, make_order(customer_email=email, customer_phone="5550100"), policy=policy)

        assert get_referrer(db, referrer_id=referrer.id).status == "fraud_suspect"


def test_order_reversed_queues_notification():
    SessionLocal = setup_db("engine_reversed")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        make_link(db, referrer=referrer, customer_email="buyer@example.com")
        order = make_order(customer_email="buyer@example.com", order_amount=1_000_000)
        on_order_finalized(db, order, policy=policy)

        result = on_order_reversed(db, order.order_id, "order_returned", policy=policy, actor="support")

        assert result.reversed is True
        reversed_notes = list_notifications_for_referrer(db, referrer_id=referrer.id, kind="commission_reversed")
        assert len(reversed_notes) == 1
        assert reversed_notes[0].payload_json["amount"] == -10_000
        assert reversed_notes[0].payload_json["reason"] == "order_returned"

        again = on_order_reversed(db, order.order_id, "order_returned", policy=policy)
        assert again.outcome == "already_reversed"
        assert len(list_notifications_for_referrer(db, referrer_id=referrer.id, kind="commission_reversed")) == 1


def test_redelivered_order_returns_recorded_event_after_referrer_suspension():
    SessionLocal = setup_db("engine_redelivery")
    policy = make_snapshot(referral_validity_days=30)
    with SessionLocal() as db:
        referrer = make_referrer(db, code="ref_alice")
        order = make_order(customer_email="buyer@example.com", referral_code="ref_alice", order_amount=1_000_000)
        first = on_order_finalized(db, order, policy=policy)

        stored = get_referrer(db, referrer_id=referrer.id)
        stored.status = "suspended"
        db.commit()

        suspended = on_order_finalized(db, order, policy=policy)
        disabled = on_order_finalized(db, order, policy=make_snapshot(is_enabled=False))
        late = on_order_finalized(db, order, policy=make_snapshot(referral_validity_days=1))

        assert first.outcome == "applied"
        for repeat in (suspended, disabled, late):
            assert repeat.outcome == "already_processed"
            assert repeat.referrer_id == referrer.id
            assert repeat.event.id == first.event.id
        assert db.query(CommissionLedgerEvent).count() == 1
        assert get_referrer(db, referrer_id=referrer.id).unpaid_commission == 10_000


def test_drained_reversal_notifies_referrer():
    SessionLocal = setup_db("engine_drain_notify")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        make_link(db, referrer=referrer, customer_email="buyer@example.com")
        order = make_order(customer_email="buyer@example.com", order_amount=1_000_000)
        on_order_reversed(db, order.order_id, "order_returned", policy=policy)

        outcome = on_order_finalized(db, order, policy=policy)

        assert outcome.reversal.outcome == "reversed"
        kinds = sorted(n.kind for n in list_notifications_for_referrer(db, referrer_id=referrer.id))
        assert kinds == ["commission_earned", "commission_reversed"]
        reversed_note = list_notifications_for_referrer(db, referrer_id=referrer.id, kind="commission_reversed")[0]
        assert reversed_note.dedupe_key == f"commission_reversed:{outcome.reversal.event.id}"
        assert reversed_note.payload_json["amount"] == -10_000


def test_checkout_code_moves_unlocked_link_when_changes_allowed():
    SessionLocal = setup_db("engine_code_change")
    with SessionLocal() as db:
        first = make_referrer(db, code="ref_a")
        second = make_referrer(db, code="ref_b")
        make_link(db, referrer=first, customer_email="buyer@example.com")

        outcome = on_order_finalized(
            db,
            make_order(customer_email="buyer@example.com", referral_code="ref_b"),
            policy=make_snapshot(allow_code_change_before_first_order=True),
        )

        assert outcome.outcome == "applied"
        assert outcome.referrer_id == second.id
        link = get_attribution_for_customer(db, customer_email="buyer@example.com")
        assert link.referrer_id == second.id
        assert link.locked is True
        assert get_referrer(db, referrer_id=first.id).referred_customer_count == 0
        assert get_referrer(db, referrer_id=second.id).referred_customer_count == 1


def test_checkout_code_keeps_unlocked_link_when_changes_not_allowed():
    SessionLocal = setup_db("engine_code_kept")
    with SessionLocal() as db:
        first = make_referrer(db, code="ref_a")
        make_referrer(db, code="ref_b")
        make_link(db, referrer=first, customer_email="buyer@example.com")

        outcome = on_order_finalized(
            db,
            make_order(customer_email="buyer@example.com", referral_code="ref_b"),
            policy=make_snapshot(allow_code_change_before_first_order=False),
        )

        assert outcome.referrer_id == first.id


def test_code_applied_before_first_order_is_credited():
    SessionLocal = setup_db("engine_code_applied")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db, code="ref_alice")
        result = on_referral_code_applied(db, CustomerIdentity(email="buyer@example.com"), "ref_alice", policy=policy)
        assert result.created is True
        assert result.link.locked is False

        outcome = on_order_finalized(db, make_order(customer_email="buyer@example.com"), policy=policy)

        assert outcome.outcome == "applied"
        assert outcome.referrer_id == referrer.id
        with pytest.raises(ProgramDisabled):
            on_referral_code_applied(
                db,
                CustomerIdentity(email="other@example.com"),
                "ref_alice",
                policy=make_snapshot(is_enabled=False),
            )


def test_phone_registered_customer_is_matched_on_first_order():
    SessionLocal = setup_db("engine_phone_registered")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db, code="ref_alice")
        on_customer_registered(
            db,
            referrer_id=referrer.id,
            customer=CustomerIdentity(email=None, phone="0912345678"),
            actor="ref_alice",
            policy=policy,
        )

        outcome = on_order_finalized(
            db,
            make_order(customer_email="buyer@example.com", customer_phone="0912-345-678"),
            policy=policy,
        )

        assert outcome.outcome == "applied"
        assert outcome.referrer_id == referrer.id
        link = get_attribution_for_customer(db, customer_email="buyer@example.com")
        assert link.locked is True
        assert link.customer_phone == "0912345678"
