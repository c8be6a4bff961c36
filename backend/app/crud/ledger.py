from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.ledger import (
    CommissionAuditEntry,
    CommissionLedgerEvent,
    OrderCommissionMarker,
    PendingReversal,
)
from app.models.referrers import Referrer


def get_event(db: Session, *, event_id: int) -> CommissionLedgerEvent | None:
    return db.query(CommissionLedgerEvent).filter(CommissionLedgerEvent.id == event_id).first()


def get_marker(db: Session, *, order_id: str) -> OrderCommissionMarker | None:
    return db.query(OrderCommissionMarker).filter(OrderCommissionMarker.order_id == order_id).first()


def get_reversal_for_event(db: Session, *, event_id: int) -> CommissionLedgerEvent | None:
    return (
        db.query(CommissionLedgerEvent)
        .filter(CommissionLedgerEvent.reverses_event_id == event_id)
        .first()
    )


def list_events_for_referrer(
    db: Session,
    *,
    referrer_id: int,
    period: str | None = None,
    limit: int = 200,
) -> list[CommissionLedgerEvent]:
    query = db.query(CommissionLedgerEvent).filter(CommissionLedgerEvent.referrer_id == referrer_id)
    if period:
        query = query.filter(CommissionLedgerEvent.period == period)
    return query.order_by(CommissionLedgerEvent.id.desc()).limit(limit).all()


def list_unpaid_earned_events(db: Session, *, referrer_id: int) -> list[CommissionLedgerEvent]:
    return (
        db.query(CommissionLedgerEvent)
        .filter(
            CommissionLedgerEvent.referrer_id == referrer_id,
            CommissionLedgerEvent.event_kind == "earned",
            CommissionLedgerEvent.status == "calculated",
            CommissionLedgerEvent.reversed.is_(False),
        )
        .all()
    )


def sum_live_earned_amounts(db: Session, *, referrer_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(CommissionLedgerEvent.amount), 0))
        .filter(
            CommissionLedgerEvent.referrer_id == referrer_id,
            CommissionLedgerEvent.event_kind == "earned",
            CommissionLedgerEvent.reversed.is_(False),
        )
        .scalar()
    )
    return int(total or 0)


def add_audit_entry(
    db: Session,
    *,
    referrer: Referrer,
    action: str,
    unpaid_before: int,
    paid_before: int,
    amount: int = 0,
    ledger_event_id: int | None = None,
    order_id: str | None = None,
    actor: str = "system",
    reason: str | None = None,
    metadata: dict | None = None,
) -> CommissionAuditEntry:
    # Flushed, not committed: the caller owns the transaction.
    entry = CommissionAuditEntry(
        referrer_id=referrer.id,
        action=action,
        ledger_event_id=ledger_event_id,
        order_id=order_id,
        amount=amount,
        unpaid_before=unpaid_before,
        unpaid_after=int(referrer.unpaid_commission or 0),
        paid_before=paid_before,
        paid_after=int(referrer.paid_commission or 0),
        actor=actor or "system",
        reason=reason,
        metadata_json=metadata or None,
    )
    db.add(entry)
    db.flush()
    return entry


def list_audit_entries(
    db: Session,
    *,
    referrer_id: int,
    limit: int = 100,
    offset: int = 0,
) -> list[CommissionAuditEntry]:
    return (
        db.query(CommissionAuditEntry)
        .filter(CommissionAuditEntry.referrer_id == referrer_id)
        .order_by(CommissionAuditEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_pending_reversal(db: Session, *, order_id: str) -> PendingReversal | None:
    return db.query(PendingReversal).filter(PendingReversal.order_id == order_id).first()


def list_pending_reversals(db: Session, *, limit: int = 100) -> list[PendingReversal]:
    return (
        db.query(PendingReversal)
        .filter(PendingReversal.status == "pending")
        .order_by(PendingReversal.created_at.asc())
        .limit(limit)
        .all()
    )


def sum_period_order_amounts(db: Session, *, referrer_id: int, period: str) -> int:
    total = (
        db.query(func.coalesce(func.sum(CommissionLedgerEvent.order_amount), 0))
        .filter(
            CommissionLedgerEvent.referrer_id == referrer_id,
            CommissionLedgerEvent.period == period,
            CommissionLedgerEvent.event_kind == "earned",
            CommissionLedgerEvent.reversed.is_(False),
        )
        .scalar()
    )
    return int(total or 0)
