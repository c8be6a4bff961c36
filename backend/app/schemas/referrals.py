from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class TierBandSchema(BaseModel):
    min: int = Field(ge=0)
    max: int | None = None
    rate: float = Field(ge=0, le=100)
    label: str | None = None


class ReferralPolicyRead(BaseModel):
    is_enabled: bool
    tiers: list[TierBandSchema]
    block_self_referral: bool
    allow_code_change_before_first_order: bool
    referral_validity_days: int
    require_admin_approval: bool
    tier_progress_threshold: float
    fraud_rules: dict
    fraud_score_threshold: int
    evaluate_fraud_on_write: bool
    reversal_clawback_mode: str
    payout_cycle: str
    payout_day: int
    min_payout_amount: int
    version: int
    updated_at: datetime | None = None


class ReferralPolicyUpdate(BaseModel):
    is_enabled: Optional[bool] = None
    tiers: Optional[list[TierBandSchema]] = None
    block_self_referral: Optional[bool] = None
    allow_code_change_before_first_order: Optional[bool] = None
    referral_validity_days: Optional[int] = Field(default=None, ge=0)
    require_admin_approval: Optional[bool] = None
    tier_progress_threshold: Optional[float] = Field(default=None, gt=0, le=1)
    fraud_rules: Optional[dict] = None
    fraud_score_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    evaluate_fraud_on_write: Optional[bool] = None
    reversal_clawback_mode: Optional[str] = None
    payout_cycle: Optional[str] = None
    payout_day: Optional[int] = Field(default=None, ge=1, le=31)
    min_payout_amount: Optional[int] = Field(default=None, ge=0)


class OrderFinalizedIn(BaseModel):
    order_id: str = Field(min_length=1)
    customer_email: EmailStr
    order_amount: int = Field(ge=0)
    finalized_at: datetime | None = None
    customer_phone: str | None = None
    referral_code: str | None = None
    shipping_address: str | None = None
    payment_method: str | None = None


class OrderReversedIn(BaseModel):
    order_id: str = Field(min_length=1)
    reason: str


class LedgerEventRead(BaseModel):
    id: int
    referrer_id: int
    order_id: str
    order_amount: int
    tier_label: str | None = None
    commission_rate: float
    amount: int
    event_kind: str
    status: str
    period: str
    reversed: bool
    reversal_reason: str | None = None
    reversed_at: datetime | None = None
    reverses_event_id: int | None = None
    requires_review: bool
    payout_batch_id: str | None = None
    paid_at: datetime | None = None
    created_at: datetime


class OrderOutcomeRead(BaseModel):
    outcome: str
    order_id: str
    referrer_id: int | None = None
    event: LedgerEventRead | None = None
    reversal_outcome: str | None = None
    tier_progress_notified: bool = False


class ReversalOutcomeRead(BaseModel):
    outcome: str
    order_id: str
    event: LedgerEventRead | None = None
    shortfall: int = 0
    pending: bool = False


class MemberCreate(BaseModel):
    email: EmailStr
    full_name: str | None = None
    phone: str | None = None
    referral_code: str | None = Field(default=None, min_length=3, max_length=64)


class MemberRead(BaseModel):
    id: int
    email: str
    full_name: str | None = None
    phone: str | None = None
    referral_code: str
    share_url: str
    status: str
    suspension_reason: str | None = None
    activated_at: datetime | None = None
    lifetime_revenue: int
    current_month_revenue: int
    revenue_period: str | None = None
    referred_customer_count: int
    unpaid_commission: int
    paid_commission: int
    clawback_due: int
    last_payout_at: datetime | None = None
    fraud_score: int
    custom_rate: float | None = None
    custom_rate_enabled: bool
    created_at: datetime
    updated_at: datetime


class MemberStatusChange(BaseModel):
    reason: str | None = None


class CustomRateUpdate(BaseModel):
    rate: float = Field(ge=0, le=100)


class MemberSummary(BaseModel):
    referrer_id: int
    email: str
    full_name: str | None = None
    status: str
    referral_code: str
    share_url: str
    period: str
    current_month_revenue: int
    lifetime_revenue: int
    referred_customer_count: int
    unpaid_commission: int
    paid_commission: int
    clawback_due: int
    fraud_score: int
    custom_rate: float | None = None
    current_tier: str
    current_rate: float
    next_tier: str | None = None
    tier_progress: float | None = None
    remaining_to_next_tier: int | None = None


class AuditEntryRead(BaseModel):
    id: int
    referrer_id: int
    action: str
    ledger_event_id: int | None = None
    order_id: str | None = None
    amount: int
    unpaid_before: int
    unpaid_after: int
    paid_before: int
    paid_after: int
    actor: str
    reason: str | None = None
    metadata: dict | None = None
    created_at: datetime


class FraudEvaluationRead(BaseModel):
    referrer_id: int
    period: str
    score: int
    is_suspect: bool
    risk_level: str
    triggered: list[str]
    signals: dict
    status: str
    flagged: bool


class MarkFraudulentIn(BaseModel):
    reason: str | None = None


class ReassignCustomerIn(BaseModel):
    customer_email: EmailStr
    customer_phone: str | None = None
    referrer_id: int
    reason: str | None = None


class AttributionRead(BaseModel):
    id: int
    customer_email: str | None = None
    customer_phone: str | None = None
    referrer_id: int
    referral_code: str
    attributed_at: datetime
    locked: bool
    locked_at: datetime | None = None


class ReferralCodeApplyIn(BaseModel):
    customer_email: EmailStr
    customer_phone: str | None = None
    referral_code: str = Field(min_length=1, max_length=64)


class CustomerRegistrationIn(BaseModel):
    customer_phone: str = Field(min_length=1, max_length=32)
    customer_email: Optional[EmailStr] = None


class AttributionResultRead(AttributionRead):
    created: bool = False
    changed: bool = False


class PayoutRequest(BaseModel):
    referrer_ids: list[int] | None = None


class PayoutLineRead(BaseModel):
    referrer_id: int
    status: str
    amount: int
    event_count: int
    clawback_offset: int
    reason: str | None = None


class PayoutBatchRead(BaseModel):
    batch_id: str
    total_amount: int
    paid_count: int
    lines: list[PayoutLineRead]


class ReconciliationRead(BaseModel):
    referrer_id: int
    unpaid_commission: int
    paid_commission: int
    clawback_due: int
    ledger_total: int
    difference: int
    ok: bool


class ReconciliationReport(BaseModel):
    ok: bool
    checked: int
    mismatches: list[ReconciliationRead]


class ProgramStats(BaseModel):
    referrers_total: int
    referrers_by_status: dict[str, int]
    unpaid_commission: int
    paid_commission: int
    clawback_due: int
    lifetime_revenue: int
    referred_customers: int
    earned_events: int
    reversed_events: int
    events_requiring_review: int
    top_referrers: list[dict]
