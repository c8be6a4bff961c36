"""Commission ledger writer and reversal engine.

Every balance mutation for a referrer runs inside ``referrer_lock`` and
``run_with_version_retry`` and commits exactly once, so the ledger event,
the referrer counters, the audit entry and the idempotency marker land
together or not at all. At all times, per referrer::

    unpaid_commission + paid_commission - clawback_due
        == sum(amount of earned events that are not reversed)
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.attribution import lock_attribution
from app.core.commissions import CommissionQuote, calculate_commission
from app.core.concurrency import referrer_lock, run_with_version_retry
from app.core.config import settings
from app.core.metrics import (
    record_commission_outcome,
    record_reconciliation_mismatch,
    record_reversal_outcome,
)
from app.core.orders import OrderFinalized
from app.core.program_policy import PolicySnapshot
from app.core.referral_errors import (
    InvalidReversalReason,
    LedgerEventNotFound,
    ReferrerNotFound,
)
from app.core.time import period_for, utcnow
from app.crud.ledger import (
    add_audit_entry,
    get_event,
    get_marker,
    get_pending_reversal,
    get_reversal_for_event,
    list_pending_reversals,
    list_unpaid_earned_events,
    sum_live_earned_amounts,
    sum_period_order_amounts,
)
from app.crud.referrers import get_referrer, normalize_email
from app.models.enums import (
    AuditActionEnum,
    ClawbackModeEnum,
    LedgerEventKindEnum,
    LedgerEventStatusEnum,
    PendingReversalStatusEnum,
    ReversalReasonEnum,
)
from app.models.ledger import (
    CommissionLedgerEvent,
    OrderCommissionMarker,
    PayoutBatch,
    PendingReversal,
)
from app.models.referrers import AttributionLink, Referrer


logger = logging.getLogger(__name__)

REVERSAL_REASONS = {reason.value for reason in ReversalReasonEnum}


@dataclass
class LedgerResult:
    outcome: str
    event: CommissionLedgerEvent | None = None
    referrer: Referrer | None = None
    quote: CommissionQuote | None = None
    month_to_date: int = 0

    @property
    def applied(self) -> bool:
        return self.outcome == "applied"


@dataclass
class ReversalResult:
    outcome: str
    event: CommissionLedgerEvent | None = None
    original: CommissionLedgerEvent | None = None
    referrer: Referrer | None = None
    pending: PendingReversal | None = None
    shortfall: int = 0

    @property
    def reversed(self) -> bool:
        return self.outcome == "reversed"


@dataclass
class PayoutLine:
    referrer_id: int
    status: str
    amount: int = 0
    event_count: int = 0
    clawback_offset: int = 0
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "referrer_id": self.referrer_id,
            "status": self.status,
            "amount": self.amount,
            "event_count": self.event_count,
            "clawback_offset": self.clawback_offset,
            "reason": self.reason,
        }


@dataclass
class PayoutBatchResult:
    batch_id: str
    lines: list[PayoutLine] = field(default_factory=list)

    @property
    def total_amount(self) -> int:
        return sum(line.amount for line in self.lines if line.status == "paid")

    @property
    def paid_count(self) -> int:
        return sum(1 for line in self.lines if line.status == "paid")


@dataclass
class ReconciliationResult:
    referrer_id: int
    unpaid_commission: int
    paid_commission: int
    clawback_due: int
    ledger_total: int

    @property
    def balance_total(self) -> int:
        return self.unpaid_commission + self.paid_commission - self.clawback_due

    @property
    def difference(self) -> int:
        return self.balance_total - self.ledger_total

    @property
    def ok(self) -> bool:
        return self.difference == 0


def _already_processed(db: Session, marker: OrderCommissionMarker) -> LedgerResult:
    event = get_event(db, event_id=marker.earned_event_id)
    return LedgerResult(
        outcome="already_processed",
        event=event,
        referrer=get_referrer(db, referrer_id=marker.referrer_id),
    )


def find_processed_order(db: Session, *, order_id: str) -> LedgerResult | None:
    marker = get_marker(db, order_id=order_id)
    if marker is None:
        return None
    return _already_processed(db, marker)


def _month_to_date_before(db: Session, referrer: Referrer, period: str) -> int:
    current = referrer.revenue_period
    if current is None or period > current:
        referrer.revenue_period = period
        referrer.current_month_revenue = 0
        return 0
    if period == current:
        return int(referrer.current_month_revenue or 0)
    # Late delivery for a closed month: rebuild that month from the ledger.
    return sum_period_order_amounts(db, referrer_id=referrer.id, period=period)


def apply_commission(
    db: Session,
    order: OrderFinalized,
    referrer_id: int,
    policy: PolicySnapshot,
    *,
    link: AttributionLink | None = None,
) -> LedgerResult:
    marker = get_marker(db, order_id=order.order_id)
    if marker is not None:
        record_commission_outcome("already_processed")
        return _already_processed(db, marker)

    link_id = link.id if link is not None else None
    period = period_for(order.finalized_at)

    def _write() -> LedgerResult:
        existing = get_marker(db, order_id=order.order_id)
        if existing is not None:
            return _already_processed(db, existing)
        referrer = get_referrer(db, referrer_id=referrer_id)
        if referrer is None:
            raise ReferrerNotFound(referrer_id)

        before = _month_to_date_before(db, referrer, period)
        override = referrer.custom_rate if referrer.custom_rate_enabled else None
        quote = calculate_commission(order.order_amount, before, policy.tiers, override)
        unpaid_before = int(referrer.unpaid_commission or 0)
        paid_before = int(referrer.paid_commission or 0)

        event = CommissionLedgerEvent(
            referrer_id=referrer.id,
            order_id=order.order_id,
            order_amount=order.order_amount,
            tier_label=quote.tier.label,
            commission_rate=quote.rate,
            amount=quote.amount,
            event_kind=LedgerEventKindEnum.EARNED.value,
            status=LedgerEventStatusEnum.CALCULATED.value,
            period=period,
            created_at=utcnow(),
        )
        db.add(event)
        db.flush()

        if period == referrer.revenue_period:
            referrer.current_month_revenue = quote.new_month_to_date
        referrer.lifetime_revenue = int(referrer.lifetime_revenue or 0) + order.order_amount
        referrer.unpaid_commission = unpaid_before + quote.amount

        add_audit_entry(
            db,
            referrer=referrer,
            action=AuditActionEnum.COMMISSION_EARNED.value,
            unpaid_before=unpaid_before,
            paid_before=paid_before,
            amount=quote.amount,
            ledger_event_id=event.id,
            order_id=order.order_id,
            metadata={
                "tier": quote.tier.label,
                "rate": str(quote.rate),
                "period": period,
                "month_to_date": quote.new_month_to_date,
                "custom_rate": override is not None,
            },
        )
        db.add(
            OrderCommissionMarker(
                order_id=order.order_id,
                referrer_id=referrer.id,
                customer_email=order.customer_email,
                customer_phone=order.customer_phone,
                shipping_address=order.shipping_address,
                payment_method=(order.payment_method or "").lower() or None,
                order_amount=order.order_amount,
                finalized_at=order.finalized_at,
                earned_event_id=event.id,
            )
        )
        if link_id is not None:
            current_link = db.get(AttributionLink, link_id)
            if current_link is not None:
                lock_attribution(current_link)
                if current_link.customer_email is None:
                    # Registered by phone; the first order supplies the email.
                    current_link.customer_email = normalize_email(order.customer_email)
        db.commit()
        db.refresh(event)
        db.refresh(referrer)
        return LedgerResult(
            outcome="applied",
            event=event,
            referrer=referrer,
            quote=quote,
            month_to_date=quote.new_month_to_date,
        )

    with referrer_lock(referrer_id):
        try:
            result = run_with_version_retry(db, referrer_id=referrer_id, operation="apply", fn=_write)
        except IntegrityError:
            db.rollback()
            marker = get_marker(db, order_id=order.order_id)
            if marker is None:
                raise
            result = _already_processed(db, marker)
        except Exception:
            db.rollback()
            raise

    if result.applied:
        record_commission_outcome("applied", amount=result.event.amount, tier=result.event.tier_label)
        logger.info(
            "commission.applied",
            extra={
                "referrer_id": referrer_id,
                "order_id": order.order_id,
                "event_id": result.event.id,
                "amount": result.event.amount,
                "tier": result.event.tier_label,
                "period": period,
            },
        )
    else:
        record_commission_outcome(result.outcome)
    return result


def _validate_reason(reason: str | ReversalReasonEnum | None) -> str:
    value = reason.value if isinstance(reason, ReversalReasonEnum) else reason
    if value not in REVERSAL_REASONS:
        raise InvalidReversalReason(value)
    return value


def record_pending_reversal(db: Session, *, order_id: str, reason: str) -> PendingReversal:
    now = utcnow()
    intent = get_pending_reversal(db, order_id=order_id)
    if intent is None:
        intent = PendingReversal(order_id=order_id, reason=reason, attempt_count=0, last_attempt_at=now)
        db.add(intent)
    else:
        intent.attempt_count = int(intent.attempt_count or 0) + 1
        intent.last_attempt_at = now
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        intent = get_pending_reversal(db, order_id=order_id)
        if intent is None:
            raise
        return intent
    db.refresh(intent)
    return intent


def reverse_commission(
    db: Session,
    order_id: str,
    reason: str | ReversalReasonEnum,
    policy: PolicySnapshot,
    *,
    actor: str = "system",
    note: str | None = None,
    fraud_penalty: int = 0,
) -> ReversalResult:
    """Reverse the earned commission for ``order_id``.

    Unknown orders record a pending intent and return ``noop``; the intent is
    applied once the commission lands. A second reversal of the same order
    returns the first reversal event.
    """
    reason_value = _validate_reason(reason)
    marker = get_marker(db, order_id=order_id)
    if marker is None:
        intent = record_pending_reversal(db, order_id=order_id, reason=reason_value)
        record_reversal_outcome("noop", reason_value)
        logger.info(
            "commission.reversal_pending",
            extra={"order_id": order_id, "reason": reason_value, "attempts": intent.attempt_count},
        )
        return ReversalResult(outcome="noop", pending=intent)

    referrer_id = marker.referrer_id

    def _write() -> ReversalResult:
        current_marker = get_marker(db, order_id=order_id)
        original = get_event(db, event_id=current_marker.earned_event_id)
        if original.reversed:
            return ReversalResult(
                outcome="already_reversed",
                event=get_reversal_for_event(db, event_id=original.id),
                original=original,
            )
        referrer = get_referrer(db, referrer_id=referrer_id)
        now = utcnow()
        amount = int(original.amount or 0)
        unpaid_before = int(referrer.unpaid_commission or 0)
        paid_before = int(referrer.paid_commission or 0)

        taken = min(amount, max(unpaid_before, 0))
        shortfall = amount - taken
        requires_review = False
        if policy.reversal_clawback_mode == ClawbackModeEnum.AUTO_CLAWBACK.value:
            referrer.unpaid_commission = unpaid_before - amount
        else:
            referrer.unpaid_commission = unpaid_before - taken
            if shortfall > 0:
                referrer.clawback_due = int(referrer.clawback_due or 0) + shortfall
                requires_review = True

        order_amount = int(original.order_amount or 0)
        referrer.lifetime_revenue = max(int(referrer.lifetime_revenue or 0) - order_amount, 0)
        if original.period == referrer.revenue_period:
            referrer.current_month_revenue = max(int(referrer.current_month_revenue or 0) - order_amount, 0)
        if fraud_penalty:
            referrer.fraud_score = min(int(referrer.fraud_score or 0) + int(fraud_penalty), 100)

        original.reversed = True
        original.reversal_reason = reason_value
        original.reversed_at = now
        reversal = CommissionLedgerEvent(
            referrer_id=referrer.id,
            order_id=order_id,
            order_amount=original.order_amount,
            tier_label=original.tier_label,
            commission_rate=original.commission_rate,
            amount=-amount,
            event_kind=LedgerEventKindEnum.REVERSED.value,
            status=LedgerEventStatusEnum.CALCULATED.value,
            period=original.period,
            reversal_reason=reason_value,
            reverses_event_id=original.id,
            requires_review=requires_review,
            created_at=now,
        )
        db.add(reversal)
        db.flush()

        add_audit_entry(
            db,
            referrer=referrer,
            action=AuditActionEnum.COMMISSION_REVERSED.value,
            unpaid_before=unpaid_before,
            paid_before=paid_before,
            amount=-amount,
            ledger_event_id=reversal.id,
            order_id=order_id,
            actor=actor,
            reason=note or reason_value,
            metadata={
                "original_event_id": original.id,
                "original_status": original.status,
                "shortfall": shortfall,
                "clawback_mode": policy.reversal_clawback_mode,
            },
        )
        if fraud_penalty:
            add_audit_entry(
                db,
                referrer=referrer,
                action=AuditActionEnum.FRAUD_MARKED.value,
                unpaid_before=int(referrer.unpaid_commission or 0),
                paid_before=paid_before,
                ledger_event_id=original.id,
                order_id=order_id,
                actor=actor,
                reason=note,
                metadata={"fraud_score": referrer.fraud_score, "penalty": int(fraud_penalty)},
            )
        current_marker.reversal_reason = reason_value
        current_marker.reversed_at = now
        intent = get_pending_reversal(db, order_id=order_id)
        if intent is not None and intent.status == PendingReversalStatusEnum.PENDING.value:
            intent.status = PendingReversalStatusEnum.APPLIED.value
            intent.last_attempt_at = now
        db.commit()
        db.refresh(reversal)
        db.refresh(referrer)
        return ReversalResult(
            outcome="reversed",
            event=reversal,
            original=original,
            referrer=referrer,
            shortfall=shortfall,
        )

    with referrer_lock(referrer_id):
        try:
            result = run_with_version_retry(db, referrer_id=referrer_id, operation="reverse", fn=_write)
        except IntegrityError:
            db.rollback()
            original = get_event(db, event_id=marker.earned_event_id)
            existing = get_reversal_for_event(db, event_id=original.id) if original is not None else None
            if existing is None:
                raise
            result = ReversalResult(outcome="already_reversed", event=existing, original=original)
        except Exception:
            db.rollback()
            raise

    record_reversal_outcome(result.outcome, reason_value)
    if result.reversed:
        logger.info(
            "commission.reversed",
            extra={
                "referrer_id": referrer_id,
                "order_id": order_id,
                "event_id": result.event.id,
                "amount": result.event.amount,
                "reason": reason_value,
                "shortfall": result.shortfall,
                "requires_review": bool(result.event.requires_review),
            },
        )
    return result


def mark_fraudulent(
    db: Session,
    *,
    event_id: int,
    policy: PolicySnapshot,
    actor: str,
    reason: str | None = None,
) -> ReversalResult:
    event = get_event(db, event_id=event_id)
    if event is None:
        raise LedgerEventNotFound(event_id)
    if event.event_kind == LedgerEventKindEnum.REVERSED.value:
        event = get_event(db, event_id=event.reverses_event_id)
    result = reverse_commission(
        db,
        event.order_id,
        ReversalReasonEnum.FRAUD_DETECTED,
        policy,
        actor=actor,
        note=reason,
        fraud_penalty=settings.FRAUD_MARK_SCORE_PENALTY,
    )
    logger.warning(
        "commission.marked_fraudulent",
        extra={"event_id": event_id, "order_id": event.order_id, "outcome": result.outcome, "actor": actor},
    )
    return result


def drain_pending_reversal(db: Session, *, order_id: str, policy: PolicySnapshot) -> ReversalResult | None:
    intent = get_pending_reversal(db, order_id=order_id)
    if intent is None or intent.status != PendingReversalStatusEnum.PENDING.value:
        return None
    if get_marker(db, order_id=order_id) is None:
        return None
    return reverse_commission(db, order_id, intent.reason, policy, actor="system:pending_reversal")


def retry_pending_reversals(
    db: Session,
    *,
    policy: PolicySnapshot,
    max_attempts: int | None = None,
    limit: int = 100,
) -> dict[str, int]:
    max_attempts = max_attempts or settings.PENDING_REVERSAL_MAX_ATTEMPTS
    counts = {"applied": 0, "waiting": 0, "expired": 0}
    for intent in list_pending_reversals(db, limit=limit):
        if get_marker(db, order_id=intent.order_id) is not None:
            result = drain_pending_reversal(db, order_id=intent.order_id, policy=policy)
            if result is not None and result.outcome in {"reversed", "already_reversed"}:
                counts["applied"] += 1
            continue
        intent.attempt_count = int(intent.attempt_count or 0) + 1
        intent.last_attempt_at = utcnow()
        if intent.attempt_count >= max_attempts:
            intent.status = PendingReversalStatusEnum.EXPIRED.value
            counts["expired"] += 1
            logger.warning(
                "commission.reversal_expired",
                extra={"order_id": intent.order_id, "reason": intent.reason, "attempts": intent.attempt_count},
            )
        else:
            counts["waiting"] += 1
        db.commit()
    return counts


def _new_batch_id(now) -> str:
    return f"PAY-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def _settle_referrer(
    db: Session,
    *,
    referrer_id: int,
    batch_id: str,
    actor: str,
    policy: PolicySnapshot,
) -> PayoutLine:
    def _write() -> PayoutLine:
        referrer = get_referrer(db, referrer_id=referrer_id)
        if referrer is None:
            return PayoutLine(referrer_id=referrer_id, status="skipped", reason="not_found")
        now = utcnow()
        unpaid_before = int(referrer.unpaid_commission or 0)
        paid_before = int(referrer.paid_commission or 0)
        clawback = int(referrer.clawback_due or 0)
        offset = min(max(unpaid_before, 0), clawback)
        payable = unpaid_before - offset
        if payable <= 0:
            return PayoutLine(referrer_id=referrer_id, status="skipped", reason="nothing_due")
        if payable < policy.min_payout_amount:
            return PayoutLine(
                referrer_id=referrer_id,
                status="skipped",
                amount=payable,
                reason="below_minimum",
            )

        events = list_unpaid_earned_events(db, referrer_id=referrer_id)
        for event in events:
            event.status = LedgerEventStatusEnum.PAID.value
            event.payout_batch_id = batch_id
            event.paid_at = now
        referrer.clawback_due = clawback - offset
        referrer.unpaid_commission = 0
        referrer.paid_commission = paid_before + payable
        referrer.last_payout_at = now
        add_audit_entry(
            db,
            referrer=referrer,
            action=AuditActionEnum.PAYOUT_SETTLED.value,
            unpaid_before=unpaid_before,
            paid_before=paid_before,
            amount=payable,
            actor=actor,
            metadata={
                "batch_id": batch_id,
                "event_count": len(events),
                "clawback_offset": offset,
            },
        )
        db.commit()
        return PayoutLine(
            referrer_id=referrer_id,
            status="paid",
            amount=payable,
            event_count=len(events),
            clawback_offset=offset,
        )

    with referrer_lock(referrer_id):
        try:
            return run_with_version_retry(db, referrer_id=referrer_id, operation="payout", fn=_write)
        except Exception:
            db.rollback()
            raise


def settle_payout_batch(
    db: Session,
    *,
    policy: PolicySnapshot,
    actor: str,
    referrer_ids: Iterable[int] | None = None,
) -> PayoutBatchResult:
    """Record a payout: move each referrer's unpaid balance to paid.

    Bookkeeping only, no money moves. Outstanding clawbacks are netted
    first and balances under ``min_payout_amount`` are skipped.
    """
    if referrer_ids is None:
        referrer_ids = [
            row.id
            for row in db.query(Referrer.id)
            .filter(Referrer.unpaid_commission > 0)
            .order_by(Referrer.id.asc())
            .all()
        ]
    now = utcnow()
    result = PayoutBatchResult(batch_id=_new_batch_id(now))
    for referrer_id in referrer_ids:
        result.lines.append(
            _settle_referrer(
                db,
                referrer_id=int(referrer_id),
                batch_id=result.batch_id,
                actor=actor,
                policy=policy,
            )
        )
    db.add(
        PayoutBatch(
            batch_id=result.batch_id,
            actor=actor,
            referrer_count=result.paid_count,
            total_amount=result.total_amount,
            results_json=[line.to_dict() for line in result.lines],
            created_at=now,
        )
    )
    db.commit()
    logger.info(
        "payout.settled",
        extra={
            "batch_id": result.batch_id,
            "referrer_count": result.paid_count,
            "total_amount": result.total_amount,
            "actor": actor,
        },
    )
    return result


def reconcile_referrer(db: Session, *, referrer_id: int) -> ReconciliationResult:
    referrer = get_referrer(db, referrer_id=referrer_id)
    if referrer is None:
        raise ReferrerNotFound(referrer_id)
    db.refresh(referrer)
    return ReconciliationResult(
        referrer_id=referrer.id,
        unpaid_commission=int(referrer.unpaid_commission or 0),
        paid_commission=int(referrer.paid_commission or 0),
        clawback_due=int(referrer.clawback_due or 0),
        ledger_total=sum_live_earned_amounts(db, referrer_id=referrer.id),
    )


def reconcile_all(db: Session) -> list[ReconciliationResult]:
    results = [
        reconcile_referrer(db, referrer_id=row.id)
        for row in db.query(Referrer.id).order_by(Referrer.id.asc()).all()
    ]
    mismatches = [result for result in results if not result.ok]
    if mismatches:
        record_reconciliation_mismatch(len(mismatches))
        for mismatch in mismatches:
            logger.error(
                "ledger.reconciliation_mismatch",
                extra={
                    "referrer_id": mismatch.referrer_id,
                    "balance_total": mismatch.balance_total,
                    "ledger_total": mismatch.ledger_total,
                    "difference": mismatch.difference,
                },
            )
    return results
