from sqlalchemy import Boolean, Column, Float, Integer, JSON, String
from sqlalchemy.dialects.postgresql import JSONB

from app.core.db import Base
from app.models.mixins import TimestampMixin
from app.models.referrers import MONEY


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class ReferralProgramPolicy(TimestampMixin, Base):
    __tablename__ = "referral_program_policies"

    id = Column(Integer, primary_key=True, index=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    tiers_json = Column(JSON_TYPE, nullable=False, default=list)

    block_self_referral = Column(Boolean, nullable=False, default=True)
    allow_code_change_before_first_order = Column(Boolean, nullable=False, default=False)
    referral_validity_days = Column(Integer, nullable=False, default=0)
    require_admin_approval = Column(Boolean, nullable=False, default=True)

    tier_progress_threshold = Column(Float, nullable=False, default=0.8)

    fraud_rules_json = Column(JSON_TYPE, nullable=False, default=dict)
    fraud_score_threshold = Column(Integer, nullable=False, default=50)
    evaluate_fraud_on_write = Column(Boolean, nullable=False, default=False)

    reversal_clawback_mode = Column(String, nullable=False, default="flag_for_review")

    payout_cycle = Column(String, nullable=False, default="monthly")
    payout_day = Column(Integer, nullable=False, default=1)
    min_payout_amount = Column(MONEY, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
