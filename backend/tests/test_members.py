import os
from datetime import datetime
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ["SKIP_MIGRATIONS"] = "1"

from app.core.ledger import apply_commission  # noqa: E402
from app.core.members import (  # noqa: E402
    approve_member,
    build_program_stats,
    build_referrer_summary,
    disable_custom_rate,
    enroll_referrer,
    reactivate_member,
    set_custom_rate,
    suspend_member,
)
from app.core.referral_errors import (  # noqa: E402
    InvalidMemberTransition,
    MemberAlreadyEnrolled,
    ReferrerNotFound,
)
from app.crud.ledger import list_audit_entries  # noqa: E402
from tests.factories import make_order, make_referrer, make_snapshot, setup_db  # noqa: E402


def test_enroll_requires_approval_when_policy_says_so():
    SessionLocal = setup_db("members_enroll")
    with SessionLocal() as db:
        pending = enroll_referrer(
            db,
            email="Alice@Example.com",
            policy=make_snapshot(require_admin_approval=True),
            full_name="Alice",
        )
        active = enroll_referrer(db, email="bob@example.com", policy=make_snapshot(require_admin_approval=False))

        assert pending.status == "pending_approval"
        assert pending.email == "alice@example.com"
        assert pending.activated_at is None
        assert pending.referral_code.startswith("ref_")
        assert active.status == "active"
        assert active.activated_at is not None
        assert pending.referral_code != active.referral_code
        assert list_audit_entries(db, referrer_id=pending.id)[0].action == "member_enrolled"


def test_enroll_rejects_duplicate_email_or_code():
    SessionLocal = setup_db("members_duplicate")
    policy = make_snapshot()
    with SessionLocal() as db:
        enroll_referrer(db, email="alice@example.com", policy=policy, referral_code="ref_alice")
        with pytest.raises(MemberAlreadyEnrolled):
            enroll_referrer(db, email="ALICE@example.com", policy=policy)
        with pytest.raises(MemberAlreadyEnrolled) as excinfo:
            enroll_referrer(db, email="carol@example.com", policy=policy, referral_code="ref_alice")
        assert excinfo.value.status_code == 409


def test_status_transitions_are_audited():
    SessionLocal = setup_db("members_transitions")
    with SessionLocal() as db:
        referrer = enroll_referrer(
            db,
            email="alice@example.com",
            policy=make_snapshot(require_admin_approval=True),
        )

        approved = approve_member(db, referrer_id=referrer.id, actor="admin@example.com")
        assert approved.status == "active"
        assert approved.activated_at is not None

        suspended = suspend_member(db, referrer_id=referrer.id, actor="admin@example.com", reason="chargebacks")
        assert suspended.status == "suspended"
        assert suspended.suspension_reason == "chargebacks"

        reactivated = reactivate_member(db, referrer_id=referrer.id, actor="admin@example.com")
        assert reactivated.status == "active"
        assert reactivated.suspension_reason is None

        actions = [entry.action for entry in list_audit_entries(db, referrer_id=referrer.id)]
        assert actions == ["member_reactivated", "member_suspended", "member_approved", "member_enrolled"]


def test_invalid_transitions_are_rejected():
    SessionLocal = setup_db("members_invalid")
    with SessionLocal() as db:
        active = make_referrer(db)
        suspended = make_referrer(db, status="suspended")

        with pytest.raises(InvalidMemberTransition):
            approve_member(db, referrer_id=active.id, actor="admin")
        with pytest.raises(InvalidMemberTransition):
            reactivate_member(db, referrer_id=active.id, actor="admin")
        with pytest.raises(InvalidMemberTransition):
            suspend_member(db, referrer_id=suspended.id, actor="admin")
        with pytest.raises(ReferrerNotFound):
            approve_member(db, referrer_id=9999, actor="admin")


def test_fraud_suspect_can_be_cleared_by_reactivation():
    SessionLocal = setup_db("members_clear_suspect")
    with SessionLocal() as db:
        referrer = make_referrer(db, status="fraud_suspect")
        cleared = reactivate_member(db, referrer_id=referrer.id, actor="risk", reason="verified")
        assert cleared.status == "active"


def test_custom_rate_set_and_disable():
    SessionLocal = setup_db("members_custom_rate")
    policy = make_snapshot()
    jan = datetime(2026, 1, 5)
    with SessionLocal() as db:
        referrer = make_referrer(db)

        updated = set_custom_rate(db, referrer_id=referrer.id, rate=Decimal("4.5"), actor="admin")
        assert updated.custom_rate_enabled is True
        assert updated.custom_rate == Decimal("4.5")
        boosted = apply_commission(db, make_order(order_amount=1_000_000, finalized_at=jan), referrer.id, policy)
        assert boosted.event.amount == 45_000

        disabled = disable_custom_rate(db, referrer_id=referrer.id, actor="admin")
        assert disabled.custom_rate_enabled is False
        plain = apply_commission(db, make_order(order_amount=1_000_000, finalized_at=jan), referrer.id, policy)
        assert plain.event.amount == 10_000

        entry = list_audit_entries(db, referrer_id=referrer.id)[1]
        assert entry.action == "custom_rate_disabled"

        with pytest.raises(ValueError):
            set_custom_rate(db, referrer_id=referrer.id, rate=150, actor="admin")


def test_summary_reports_balances_and_tier():
    SessionLocal = setup_db("members_summary")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db, code="ref_summary")
        apply_commission(db, make_order(order_amount=8_000_000), referrer.id, policy)

        summary = build_referrer_summary(db, referrer=referrer, policy=policy)

        assert summary["share_url"].endswith("ref_summary")
        assert summary["current_month_revenue"] == 8_000_000
        assert summary["unpaid_commission"] == 80_000
        assert summary["current_tier"] == "0 - 10M"
        assert summary["next_tier"] == "10M - 50M"
        assert summary["tier_progress"] == 0.8
        assert summary["remaining_to_next_tier"] == 2_000_000


def test_program_stats_totals():
    SessionLocal = setup_db("members_stats")
    policy = make_snapshot()
    with SessionLocal() as db:
        first = make_referrer(db)
        make_referrer(db, status="suspended")
        apply_commission(db, make_order(order_amount=1_000_000), first.id, policy)

        stats = build_program_stats(db)

        assert stats["referrers_total"] == 2
        assert stats["referrers_by_status"]["active"] == 1
        assert stats["referrers_by_status"]["suspended"] == 1
        assert stats["unpaid_commission"] == 10_000
        assert stats["earned_events"] == 1
        assert stats["reversed_events"] == 0
        assert stats["top_referrers"][0]["referrer_id"] == first.id
