from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from app.core.db import Base
from app.core.time import utcnow
from app.models.referrers import MONEY


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class CommissionLedgerEvent(Base):
    __tablename__ = "commission_ledger_events"
    __table_args__ = (
        # One live earned event per order.
        Index(
            "uq_commission_ledger_events_order_earned",
            "order_id",
            unique=True,
            sqlite_where=text("event_kind = 'earned' AND reversed = 0"),
            postgresql_where=text("event_kind = 'earned' AND NOT reversed"),
        ),
        UniqueConstraint("reverses_event_id", name="uq_commission_ledger_events_reverses"),
        Index("ix_commission_ledger_events_referrer_period", "referrer_id", "period"),
        Index("ix_commission_ledger_events_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    referrer_id = Column(Integer, ForeignKey("referrers.id", ondelete="RESTRICT"), nullable=False)
    order_id = Column(String, nullable=False, index=True)
    order_amount = Column(MONEY, nullable=False)
    tier_label = Column(String, nullable=True)
    commission_rate = Column(Numeric(6, 3), nullable=False)
    amount = Column(MONEY, nullable=False)
    event_kind = Column(String, nullable=False, default="earned")
    status = Column(String, nullable=False, default="calculated")
    period = Column(String(7), nullable=False)

    reversed = Column(Boolean, nullable=False, default=False)
    reversal_reason = Column(String, nullable=True)
    reversed_at = Column(DateTime, nullable=True)
    reverses_event_id = Column(
        Integer,
        ForeignKey("commission_ledger_events.id", ondelete="RESTRICT"),
        nullable=True,
    )
    requires_review = Column(Boolean, nullable=False, default=False)

    payout_batch_id = Column(String, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CommissionAuditEntry(Base):
    __tablename__ = "commission_audit_entries"
    __table_args__ = (
        Index("ix_commission_audit_referrer_created", "referrer_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    referrer_id = Column(Integer, ForeignKey("referrers.id", ondelete="RESTRICT"), nullable=False)
    action = Column(String, nullable=False)
    ledger_event_id = Column(Integer, ForeignKey("commission_ledger_events.id"), nullable=True)
    order_id = Column(String, nullable=True)
    amount = Column(MONEY, nullable=False, default=0)
    unpaid_before = Column(MONEY, nullable=False)
    unpaid_after = Column(MONEY, nullable=False)
    paid_before = Column(MONEY, nullable=False)
    paid_after = Column(MONEY, nullable=False)
    actor = Column(String, nullable=False, default="system")
    reason = Column(Text, nullable=True)
    metadata_json = Column(JSON_TYPE, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class OrderCommissionMarker(Base):
    __tablename__ = "referral_order_markers"
    __table_args__ = (
        UniqueConstraint("order_id", name="uq_referral_order_markers_order"),
        Index("ix_referral_order_markers_referrer_finalized", "referrer_id", "finalized_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, nullable=False)
    referrer_id = Column(Integer, ForeignKey("referrers.id", ondelete="RESTRICT"), nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=True)
    shipping_address = Column(Text, nullable=True)
    payment_method = Column(String, nullable=True)
    order_amount = Column(MONEY, nullable=False)
    finalized_at = Column(DateTime, nullable=False)
    earned_event_id = Column(Integer, ForeignKey("commission_ledger_events.id"), nullable=False)
    reversal_reason = Column(String, nullable=True)
    reversed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PendingReversal(Base):
    __tablename__ = "referral_pending_reversals"
    __table_args__ = (
        UniqueConstraint("order_id", name="uq_referral_pending_reversals_order"),
        Index("ix_referral_pending_reversals_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PayoutBatch(Base):
    __tablename__ = "commission_payout_batches"
    __table_args__ = (
        UniqueConstraint("batch_id", name="uq_commission_payout_batches_batch"),
    )

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(String, nullable=False)
    actor = Column(String, nullable=False)
    referrer_count = Column(Integer, nullable=False, default=0)
    total_amount = Column(MONEY, nullable=False, default=0)
    results_json = Column(JSON_TYPE, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
