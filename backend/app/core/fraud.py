"""Rule-based fraud scoring for referrers.

Scores are additive: each rule that fires contributes its configured
weight. A referrer at or above the policy threshold is moved from
``active`` to ``fraud_suspect`` (never the other way, and never
suspended automatically).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from sqlalchemy.orm import Session

from app.core.concurrency import referrer_lock, run_with_version_retry
from app.core.metrics import record_fraud_flag
from app.core.program_policy import PolicySnapshot
from app.core.referral_errors import ReferrerNotFound
from app.core.referral_notifications import fraud_alert_dedupe_key, notify_referrer_safely
from app.core.time import period_bounds, period_for, previous_period, utcnow
from app.crud.ledger import add_audit_entry
from app.crud.referrers import get_referrer, list_attributions_for_referrer
from app.models.enums import (
    AuditActionEnum,
    NotificationKindEnum,
    ReferrerStatusEnum,
    ReversalReasonEnum,
)
from app.models.ledger import OrderCommissionMarker


logger = logging.getLogger(__name__)

UNCOLLECTED_REASONS = {
    ReversalReasonEnum.ORDER_CANCELLED.value,
    ReversalReasonEnum.ORDER_RETURNED.value,
}


@dataclass(frozen=True)
class FraudSignals:
    max_accounts_per_address: int = 0
    max_accounts_per_phone: int = 0
    cod_uncollected_count: int = 0
    period_revenue: int = 0
    end_of_period_revenue: int = 0
    period_order_count: int = 0
    previous_period_order_count: int = 0


@dataclass
class FraudEvaluation:
    score: int
    is_suspect: bool
    risk_level: str
    triggered: list[str] = field(default_factory=list)


@dataclass
class FraudReview:
    referrer_id: int
    period: str
    evaluation: FraudEvaluation
    signals: FraudSignals
    status: str
    flagged: bool = False

    def to_dict(self) -> dict:
        return {
            "referrer_id": self.referrer_id,
            "period": self.period,
            "score": self.evaluation.score,
            "is_suspect": self.evaluation.is_suspect,
            "risk_level": self.evaluation.risk_level,
            "triggered": list(self.evaluation.triggered),
            "signals": asdict(self.signals),
            "status": self.status,
            "flagged": self.flagged,
        }


def risk_level_for(score: int) -> str:
    if score >= 70:
        return "critical"
    if score >= 50:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def evaluate_fraud(signals: FraudSignals, policy: PolicySnapshot) -> FraudEvaluation:
    rules = policy.fraud_rules
    triggered: list[str] = []
    score = 0

    def fire(name: str) -> None:
        nonlocal score
        score += int(rules[name].weight)
        triggered.append(name)

    rule = rules.get("shared_address")
    if rule and signals.max_accounts_per_address > rule.threshold:
        fire("shared_address")

    rule = rules.get("shared_phone")
    if rule and signals.max_accounts_per_phone > rule.threshold:
        fire("shared_phone")

    rule = rules.get("cod_uncollected")
    if rule and signals.cod_uncollected_count >= rule.threshold:
        fire("cod_uncollected")

    rule = rules.get("end_of_period_concentration")
    if rule and signals.period_revenue > 0:
        min_orders = int(rule.options.get("min_orders", 5))
        share = signals.end_of_period_revenue / signals.period_revenue
        if signals.period_order_count > min_orders and share > rule.threshold:
            fire("end_of_period_concentration")

    rule = rules.get("order_spike")
    if rule and signals.previous_period_order_count > 0:
        ratio = signals.period_order_count / signals.previous_period_order_count
        if ratio > rule.threshold:
            fire("order_spike")

    return FraudEvaluation(
        score=score,
        is_suspect=score >= policy.fraud_score_threshold,
        risk_level=risk_level_for(score),
        triggered=triggered,
    )


def _normalize_address(value: str | None) -> str | None:
    if not value:
        return None
    return " ".join(value.lower().split()) or None


def _max_group_size(pairs) -> int:
    groups: dict[str, set[str]] = defaultdict(set)
    for key, customer in pairs:
        if key and customer:
            groups[key].add(customer)
    return max((len(customers) for customers in groups.values()), default=0)


def collect_fraud_signals(
    db: Session,
    *,
    referrer_id: int,
    period: str,
    policy: PolicySnapshot | None = None,
) -> FraudSignals:
    final_days = 3
    if policy is not None and "end_of_period_concentration" in policy.fraud_rules:
        final_days = int(policy.fraud_rules["end_of_period_concentration"].options.get("final_days", 3))

    markers = (
        db.query(OrderCommissionMarker)
        .filter(OrderCommissionMarker.referrer_id == referrer_id)
        .all()
    )
    links = list_attributions_for_referrer(db, referrer_id=referrer_id)

    max_per_address = _max_group_size(
        (_normalize_address(marker.shipping_address), marker.customer_email) for marker in markers
    )
    phone_pairs = [(link.customer_phone, link.customer_email) for link in links]
    phone_pairs.extend((marker.customer_phone, marker.customer_email) for marker in markers)
    max_per_phone = _max_group_size(phone_pairs)

    cod_uncollected = sum(
        1
        for marker in markers
        if (marker.payment_method or "").lower() == "cod" and marker.reversal_reason in UNCOLLECTED_REASONS
    )

    start, end = period_bounds(period)
    tail_start = end - timedelta(days=final_days)
    previous_start, previous_end = period_bounds(previous_period(period))
    in_period = [marker for marker in markers if start <= marker.finalized_at < end]
    period_revenue = sum(int(marker.order_amount or 0) for marker in in_period)
    tail_revenue = sum(int(marker.order_amount or 0) for marker in in_period if marker.finalized_at >= tail_start)
    previous_count = sum(1 for marker in markers if previous_start <= marker.finalized_at < previous_end)

    return FraudSignals(
        max_accounts_per_address=max_per_address,
        max_accounts_per_phone=max_per_phone,
        cod_uncollected_count=cod_uncollected,
        period_revenue=period_revenue,
        end_of_period_revenue=tail_revenue,
        period_order_count=len(in_period),
        previous_period_order_count=previous_count,
    )


def evaluate_referrer(
    db: Session,
    *,
    referrer_id: int,
    policy: PolicySnapshot,
    period: str | None = None,
    actor: str = "system",
) -> FraudReview:
    if get_referrer(db, referrer_id=referrer_id) is None:
        raise ReferrerNotFound(referrer_id)
    period = period or period_for(utcnow())
    signals = collect_fraud_signals(db, referrer_id=referrer_id, period=period, policy=policy)
    evaluation = evaluate_fraud(signals, policy)

    def _write() -> FraudReview:
        referrer = get_referrer(db, referrer_id=referrer_id)
        flagged = False
        referrer.fraud_score = min(evaluation.score, 100)
        if evaluation.is_suspect and referrer.status == ReferrerStatusEnum.ACTIVE.value:
            referrer.status = ReferrerStatusEnum.FRAUD_SUSPECT.value
            flagged = True
            add_audit_entry(
                db,
                referrer=referrer,
                action=AuditActionEnum.FRAUD_FLAGGED.value,
                unpaid_before=int(referrer.unpaid_commission or 0),
                paid_before=int(referrer.paid_commission or 0),
                actor=actor,
                reason=", ".join(evaluation.triggered) or None,
                metadata={
                    "score": evaluation.score,
                    "risk_level": evaluation.risk_level,
                    "period": period,
                },
            )
        db.commit()
        return FraudReview(
            referrer_id=referrer_id,
            period=period,
            evaluation=evaluation,
            signals=signals,
            status=referrer.status,
            flagged=flagged,
        )

    with referrer_lock(referrer_id):
        try:
            review = run_with_version_retry(db, referrer_id=referrer_id, operation="fraud", fn=_write)
        except Exception:
            db.rollback()
            raise

    if review.flagged:
        record_fraud_flag()
        logger.warning(
            "fraud.flagged",
            extra={
                "referrer_id": referrer_id,
                "score": evaluation.score,
                "risk_level": evaluation.risk_level,
                "triggered": evaluation.triggered,
            },
        )
    if evaluation.is_suspect:
        notify_referrer_safely(
            db,
            referrer_id=referrer_id,
            kind=NotificationKindEnum.FRAUD_ALERT.value,
            period=period,
            dedupe_key=fraud_alert_dedupe_key(referrer_id, period),
            payload={
                "score": evaluation.score,
                "risk_level": evaluation.risk_level,
                "triggered": evaluation.triggered,
                "period": period,
            },
        )
    return review
