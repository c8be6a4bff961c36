"""Order-event entry points for the referral program.

``on_order_finalized`` and ``on_order_reversed`` are what the checkout
flow calls; ``on_referral_code_applied`` and ``on_customer_registered``
attach a customer to a referrer before the first order. Ledger writes
happen in one transaction; notifications, tier progress and fraud
evaluation run after the commit and can only log on failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.attribution import (
    AttributionResult,
    CustomerIdentity,
    register_customer_for_referrer,
    resolve_attribution,
)
from app.core.fraud import evaluate_referrer
from app.core.ledger import (
    LedgerResult,
    ReversalResult,
    apply_commission,
    drain_pending_reversal,
    find_processed_order,
    reverse_commission,
)
from app.core.metrics import record_commission_outcome
from app.core.orders import OrderFinalized
from app.core.program_policy import PolicySnapshot, load_policy_snapshot
from app.core.referral_errors import ProgramDisabled
from app.core.referral_notifications import notify_referrer_safely
from app.core.tier_progress import TierProgressResult, check_tier_progress
from app.crud.referrers import get_attribution_for_customer, get_referrer, normalize_code
from app.models.enums import ATTRIBUTABLE_STATUSES, NotificationKindEnum, ReversalReasonEnum


logger = logging.getLogger(__name__)


@dataclass
class OrderOutcome:
    outcome: str
    order_id: str
    referrer_id: int | None = None
    ledger: LedgerResult | None = None
    reversal: ReversalResult | None = None
    tier_progress: TierProgressResult | None = None

    @property
    def event(self):
        return self.ledger.event if self.ledger else None


def _within_validity_window(link, order: OrderFinalized, policy: PolicySnapshot) -> bool:
    if policy.referral_validity_days <= 0:
        return True
    return order.finalized_at <= link.attributed_at + timedelta(days=policy.referral_validity_days)


def _skip(outcome: str, order: OrderFinalized, referrer_id: int | None = None) -> OrderOutcome:
    record_commission_outcome(outcome)
    logger.info(
        f"commission.{outcome}",
        extra={"order_id": order.order_id, "referrer_id": referrer_id},
    )
    return OrderOutcome(outcome=outcome, order_id=order.order_id, referrer_id=referrer_id)


def _wants_code_change(link, order: OrderFinalized, policy: PolicySnapshot) -> bool:
    if link.locked or not policy.allow_code_change_before_first_order:
        return False
    return normalize_code(order.referral_code) != link.referral_code


def on_order_finalized(
    db: Session,
    order: OrderFinalized,
    *,
    policy: PolicySnapshot | None = None,
) -> OrderOutcome:
    policy = policy or load_policy_snapshot(db)
    processed = find_processed_order(db, order_id=order.order_id)
    if processed is not None:
        # Redelivery reports the recorded commission whatever changed since.
        record_commission_outcome(processed.outcome)
        return OrderOutcome(
            outcome=processed.outcome,
            order_id=order.order_id,
            referrer_id=processed.event.referrer_id if processed.event else None,
            ledger=processed,
        )
    if not policy.is_enabled:
        return _skip("program_disabled", order)

    link = get_attribution_for_customer(
        db,
        customer_email=order.customer_email,
        customer_phone=order.customer_phone,
    )
    if order.referral_code and (link is None or _wants_code_change(link, order, policy)):
        customer = CustomerIdentity(email=order.customer_email, phone=order.customer_phone)
        link = resolve_attribution(db, code=order.referral_code, customer=customer, policy=policy).link
    elif link is None:
        return _skip("not_referred", order)

    referrer = get_referrer(db, referrer_id=link.referrer_id)
    if referrer is None or referrer.status not in ATTRIBUTABLE_STATUSES:
        return _skip("referrer_inactive", order, link.referrer_id)
    if not _within_validity_window(link, order, policy):
        return _skip("outside_validity_window", order, referrer.id)

    referrer_id = referrer.id
    ledger = apply_commission(db, order, referrer_id, policy, link=link)
    outcome = OrderOutcome(
        outcome=ledger.outcome,
        order_id=order.order_id,
        referrer_id=referrer_id,
        ledger=ledger,
    )
    if not ledger.applied:
        return outcome

    outcome.reversal = drain_pending_reversal(db, order_id=order.order_id, policy=policy)
    _after_commit(db, outcome, policy)
    return outcome


def _after_commit(db: Session, outcome: OrderOutcome, policy: PolicySnapshot) -> None:
    event = outcome.ledger.event
    notify_referrer_safely(
        db,
        referrer_id=outcome.referrer_id,
        kind=NotificationKindEnum.COMMISSION_EARNED.value,
        period=event.period,
        dedupe_key=f"{NotificationKindEnum.COMMISSION_EARNED.value}:{event.id}",
        payload={
            "event_id": event.id,
            "order_id": event.order_id,
            "amount": int(event.amount),
            "tier": event.tier_label,
            "rate": float(event.commission_rate),
        },
    )
    if outcome.reversal is not None and outcome.reversal.reversed:
        # A held reversal landed right after the commission.
        _notify_reversed(db, outcome.reversal, outcome.order_id)
        return
    try:
        referrer = get_referrer(db, referrer_id=outcome.referrer_id)
        if referrer.revenue_period == event.period:
            outcome.tier_progress = check_tier_progress(
                db,
                referrer=referrer,
                revenue=int(referrer.current_month_revenue or 0),
                policy=policy,
                period=event.period,
            )
        if policy.evaluate_fraud_on_write:
            evaluate_referrer(db, referrer_id=outcome.referrer_id, policy=policy, period=event.period)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            "commission.post_commit_failed",
            extra={"order_id": outcome.order_id, "referrer_id": outcome.referrer_id, "error": str(exc)},
        )


def _notify_reversed(db: Session, result: ReversalResult, order_id: str) -> None:
    event = result.event
    notify_referrer_safely(
        db,
        referrer_id=event.referrer_id,
        kind=NotificationKindEnum.COMMISSION_REVERSED.value,
        period=event.period,
        dedupe_key=f"{NotificationKindEnum.COMMISSION_REVERSED.value}:{event.id}",
        payload={
            "event_id": event.id,
            "original_event_id": event.reverses_event_id,
            "order_id": order_id,
            "amount": int(event.amount),
            "reason": event.reversal_reason,
            "requires_review": bool(event.requires_review),
        },
    )


def on_order_reversed(
    db: Session,
    order_id: str,
    reason: str | ReversalReasonEnum,
    *,
    policy: PolicySnapshot | None = None,
    actor: str = "system",
) -> ReversalResult:
    policy = policy or load_policy_snapshot(db)
    result = reverse_commission(db, order_id, reason, policy, actor=actor)
    if result.reversed:
        _notify_reversed(db, result, order_id)
    return result


def on_referral_code_applied(
    db: Session,
    customer: CustomerIdentity,
    code: str,
    *,
    policy: PolicySnapshot | None = None,
) -> AttributionResult:
    """Customer enters a code before checkout; the first order locks the link."""
    policy = policy or load_policy_snapshot(db)
    if not policy.is_enabled:
        raise ProgramDisabled()
    return resolve_attribution(db, code=code, customer=customer, policy=policy)


def on_customer_registered(
    db: Session,
    *,
    referrer_id: int,
    customer: CustomerIdentity,
    actor: str,
    policy: PolicySnapshot | None = None,
) -> AttributionResult:
    policy = policy or load_policy_snapshot(db)
    if not policy.is_enabled:
        raise ProgramDisabled()
    return register_customer_for_referrer(
        db,
        referrer_id=referrer_id,
        customer=customer,
        policy=policy,
        actor=actor,
    )
