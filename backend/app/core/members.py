from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.attribution import build_share_url, generate_referral_code
from app.core.concurrency import referrer_lock, run_with_version_retry
from app.core.program_policy import PolicySnapshot
from app.core.referral_errors import (
    InvalidMemberTransition,
    MemberAlreadyEnrolled,
    ReferrerNotFound,
)
from app.core.tier_progress import compute_tier_progress
from app.core.time import period_for, utcnow
from app.crud.ledger import add_audit_entry
from app.crud.referrers import (
    create_referrer,
    get_referrer,
    get_referrer_by_code,
    get_referrer_by_email,
)
from app.models.enums import (
    AuditActionEnum,
    LedgerEventKindEnum,
    ReferrerStatusEnum,
)
from app.models.ledger import CommissionLedgerEvent
from app.models.referrers import Referrer


logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5


def _unique_code(db: Session) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_referral_code()
        if get_referrer_by_code(db, code=code) is None:
            return code
    raise RuntimeError("Could not allocate a unique referral code")


def enroll_referrer(
    db: Session,
    *,
    email: str,
    policy: PolicySnapshot,
    full_name: str | None = None,
    phone: str | None = None,
    referral_code: str | None = None,
    actor: str = "system",
) -> Referrer:
    if get_referrer_by_email(db, email=email) is not None:
        raise MemberAlreadyEnrolled(email)
    if referral_code and get_referrer_by_code(db, code=referral_code) is not None:
        raise MemberAlreadyEnrolled(email)
    status = (
        ReferrerStatusEnum.PENDING_APPROVAL.value
        if policy.require_admin_approval
        else ReferrerStatusEnum.ACTIVE.value
    )
    try:
        referrer = create_referrer(
            db,
            email=email,
            full_name=full_name,
            phone=phone,
            referral_code=referral_code or _unique_code(db),
            status=status,
            activated_at=utcnow() if status == ReferrerStatusEnum.ACTIVE.value else None,
            commit=False,
        )
        add_audit_entry(
            db,
            referrer=referrer,
            action=AuditActionEnum.MEMBER_ENROLLED.value,
            unpaid_before=0,
            paid_before=0,
            actor=actor,
            metadata={"status": status},
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise MemberAlreadyEnrolled(email) from None
    db.refresh(referrer)
    logger.info(
        "member.enrolled",
        extra={"referrer_id": referrer.id, "status": status, "actor": actor},
    )
    return referrer


def _mutate_member(
    db: Session,
    *,
    referrer_id: int,
    action: AuditActionEnum,
    actor: str,
    reason: str | None,
    apply: Callable[[Referrer], dict[str, Any] | None],
) -> Referrer:
    if get_referrer(db, referrer_id=referrer_id) is None:
        raise ReferrerNotFound(referrer_id)

    def _write() -> Referrer:
        referrer = get_referrer(db, referrer_id=referrer_id)
        metadata = apply(referrer)
        add_audit_entry(
            db,
            referrer=referrer,
            action=action.value,
            unpaid_before=int(referrer.unpaid_commission or 0),
            paid_before=int(referrer.paid_commission or 0),
            actor=actor,
            reason=reason,
            metadata=metadata,
        )
        db.commit()
        db.refresh(referrer)
        return referrer

    with referrer_lock(referrer_id):
        try:
            referrer = run_with_version_retry(db, referrer_id=referrer_id, operation=action.value, fn=_write)
        except Exception:
            db.rollback()
            raise
    logger.info(
        f"member.{action.value.removeprefix('member_')}",
        extra={"referrer_id": referrer_id, "status": referrer.status, "actor": actor},
    )
    return referrer


def _require_status(referrer: Referrer, allowed: set[str], target: str) -> str:
    if referrer.status not in allowed:
        raise InvalidMemberTransition(referrer.status, target)
    return referrer.status


def approve_member(db: Session, *, referrer_id: int, actor: str) -> Referrer:
    target = ReferrerStatusEnum.ACTIVE.value

    def apply(referrer: Referrer):
        previous = _require_status(referrer, {ReferrerStatusEnum.PENDING_APPROVAL.value}, target)
        referrer.status = target
        referrer.activated_at = utcnow()
        return {"previous_status": previous}

    return _mutate_member(
        db,
        referrer_id=referrer_id,
        action=AuditActionEnum.MEMBER_APPROVED,
        actor=actor,
        reason=None,
        apply=apply,
    )


def suspend_member(db: Session, *, referrer_id: int, actor: str, reason: str | None = None) -> Referrer:
    target = ReferrerStatusEnum.SUSPENDED.value
    allowed = {status.value for status in ReferrerStatusEnum} - {target}

    def apply(referrer: Referrer):
        previous = _require_status(referrer, allowed, target)
        referrer.status = target
        referrer.suspension_reason = reason
        return {"previous_status": previous}

    return _mutate_member(
        db,
        referrer_id=referrer_id,
        action=AuditActionEnum.MEMBER_SUSPENDED,
        actor=actor,
        reason=reason,
        apply=apply,
    )


def reactivate_member(db: Session, *, referrer_id: int, actor: str, reason: str | None = None) -> Referrer:
    target = ReferrerStatusEnum.ACTIVE.value
    allowed = {ReferrerStatusEnum.SUSPENDED.value, ReferrerStatusEnum.FRAUD_SUSPECT.value}

    def apply(referrer: Referrer):
        previous = _require_status(referrer, allowed, target)
        referrer.status = target
        referrer.suspension_reason = None
        if referrer.activated_at is None:
            referrer.activated_at = utcnow()
        return {"previous_status": previous}

    return _mutate_member(
        db,
        referrer_id=referrer_id,
        action=AuditActionEnum.MEMBER_REACTIVATED,
        actor=actor,
        reason=reason,
        apply=apply,
    )


def set_custom_rate(db: Session, *, referrer_id: int, rate: Decimal | float, actor: str) -> Referrer:
    rate = Decimal(str(rate))
    if rate < 0 or rate > 100:
        raise ValueError("custom rate must be between 0 and 100")

    def apply(referrer: Referrer):
        previous = referrer.custom_rate if referrer.custom_rate_enabled else None
        referrer.custom_rate = rate
        referrer.custom_rate_enabled = True
        return {"rate": str(rate), "previous_rate": str(previous) if previous is not None else None}

    return _mutate_member(
        db,
        referrer_id=referrer_id,
        action=AuditActionEnum.CUSTOM_RATE_SET,
        actor=actor,
        reason=None,
        apply=apply,
    )


def disable_custom_rate(db: Session, *, referrer_id: int, actor: str) -> Referrer:
    def apply(referrer: Referrer):
        referrer.custom_rate_enabled = False
        return {"rate": str(referrer.custom_rate) if referrer.custom_rate is not None else None}

    return _mutate_member(
        db,
        referrer_id=referrer_id,
        action=AuditActionEnum.CUSTOM_RATE_DISABLED,
        actor=actor,
        reason=None,
        apply=apply,
    )


def build_referrer_summary(db: Session, *, referrer: Referrer, policy: PolicySnapshot) -> dict[str, Any]:
    period = period_for(utcnow())
    month_revenue = int(referrer.current_month_revenue or 0) if referrer.revenue_period == period else 0
    progress = compute_tier_progress(month_revenue, policy.tiers)
    return {
        "referrer_id": referrer.id,
        "email": referrer.email,
        "full_name": referrer.full_name,
        "status": referrer.status,
        "referral_code": referrer.referral_code,
        "share_url": build_share_url(referrer.referral_code),
        "period": period,
        "current_month_revenue": month_revenue,
        "lifetime_revenue": int(referrer.lifetime_revenue or 0),
        "referred_customer_count": int(referrer.referred_customer_count or 0),
        "unpaid_commission": int(referrer.unpaid_commission or 0),
        "paid_commission": int(referrer.paid_commission or 0),
        "clawback_due": int(referrer.clawback_due or 0),
        "fraud_score": int(referrer.fraud_score or 0),
        "custom_rate": float(referrer.custom_rate) if referrer.custom_rate_enabled and referrer.custom_rate is not None else None,
        "current_tier": progress.current_tier.label,
        "current_rate": float(progress.current_tier.rate),
        "next_tier": progress.next_tier.label if progress.next_tier else None,
        "tier_progress": round(progress.progress, 4) if progress.progress is not None else None,
        "remaining_to_next_tier": progress.remaining_amount,
    }


def build_program_stats(db: Session) -> dict[str, Any]:
    status_counts = {status.value: 0 for status in ReferrerStatusEnum}
    for status, count in db.query(Referrer.status, func.count(Referrer.id)).group_by(Referrer.status).all():
        status_counts[status] = int(count)

    totals = db.query(
        func.coalesce(func.sum(Referrer.unpaid_commission), 0),
        func.coalesce(func.sum(Referrer.paid_commission), 0),
        func.coalesce(func.sum(Referrer.clawback_due), 0),
        func.coalesce(func.sum(Referrer.lifetime_revenue), 0),
        func.coalesce(func.sum(Referrer.referred_customer_count), 0),
    ).one()

    event_counts = dict(
        db.query(CommissionLedgerEvent.event_kind, func.count(CommissionLedgerEvent.id))
        .group_by(CommissionLedgerEvent.event_kind)
        .all()
    )
    review_count = (
        db.query(func.count(CommissionLedgerEvent.id))
        .filter(CommissionLedgerEvent.requires_review.is_(True))
        .scalar()
    )
    top = (
        db.query(Referrer)
        .order_by(Referrer.lifetime_revenue.desc(), Referrer.id.asc())
        .limit(5)
        .all()
    )
    return {
        "referrers_total": sum(status_counts.values()),
        "referrers_by_status": status_counts,
        "unpaid_commission": int(totals[0]),
        "paid_commission": int(totals[1]),
        "clawback_due": int(totals[2]),
        "lifetime_revenue": int(totals[3]),
        "referred_customers": int(totals[4]),
        "earned_events": int(event_counts.get(LedgerEventKindEnum.EARNED.value, 0)),
        "reversed_events": int(event_counts.get(LedgerEventKindEnum.REVERSED.value, 0)),
        "events_requiring_review": int(review_count or 0),
        "top_referrers": [
            {
                "referrer_id": row.id,
                "email": row.email,
                "lifetime_revenue": int(row.lifetime_revenue or 0),
                "unpaid_commission": int(row.unpaid_commission or 0),
            }
            for row in top
        ],
    }
