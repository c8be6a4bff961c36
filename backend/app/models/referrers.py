from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from app.core.db import Base
from app.core.time import utcnow
from app.models.mixins import TimestampMixin


MONEY = BigInteger().with_variant(Integer, "sqlite")


class Referrer(TimestampMixin, Base):
    __tablename__ = "referrers"
    __table_args__ = (
        UniqueConstraint("referral_code", name="uq_referrers_code"),
        UniqueConstraint("email", name="uq_referrers_email"),
        Index("ix_referrers_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    referral_code = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending_approval")
    suspension_reason = Column(Text, nullable=True)
    activated_at = Column(DateTime, nullable=True)

    lifetime_revenue = Column(MONEY, nullable=False, default=0)
    current_month_revenue = Column(MONEY, nullable=False, default=0)
    revenue_period = Column(String(7), nullable=True)
    referred_customer_count = Column(Integer, nullable=False, default=0)

    unpaid_commission = Column(MONEY, nullable=False, default=0)
    paid_commission = Column(MONEY, nullable=False, default=0)
    # Reversed amounts that could not be taken from the unpaid balance.
    clawback_due = Column(MONEY, nullable=False, default=0)
    last_payout_at = Column(DateTime, nullable=True)

    fraud_score = Column(Integer, nullable=False, default=0)
    custom_rate = Column(Numeric(6, 3), nullable=True)
    custom_rate_enabled = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class AttributionLink(TimestampMixin, Base):
    __tablename__ = "referral_attributions"
    __table_args__ = (
        UniqueConstraint("customer_email", name="uq_referral_attributions_customer"),
        Index("ix_referral_attributions_referrer", "referrer_id"),
        Index("ix_referral_attributions_phone", "customer_phone"),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    referrer_id = Column(Integer, ForeignKey("referrers.id", ondelete="RESTRICT"), nullable=False)
    referral_code = Column(String, nullable=False)
    attributed_at = Column(DateTime, nullable=False, default=utcnow)
    locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime, nullable=True)
