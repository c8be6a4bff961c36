from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.dependencies import require_admin_token
from app.api.orders import event_read
from app.api.referrals import attribution_read
from app.core.attribution import CustomerIdentity, build_share_url, reassign_customer
from app.core.db import get_db
from app.core.fraud import evaluate_referrer
from app.core.ledger import mark_fraudulent, reconcile_all, settle_payout_batch
from app.core.members import (
    approve_member,
    build_program_stats,
    build_referrer_summary,
    disable_custom_rate,
    enroll_referrer,
    reactivate_member,
    set_custom_rate,
    suspend_member,
)
from app.core.program_policy import load_policy_snapshot, parse_fraud_rules, parse_tier_table
from app.core.referral_errors import PolicyUnavailable, ReferrerNotFound
from app.crud.ledger import list_audit_entries, list_events_for_referrer
from app.crud.policy import DEFAULT_TIERS, get_policy_row, upsert_policy
from app.crud.referrers import get_referrer, list_referrers
from app.models.enums import ClawbackModeEnum, PayoutCycleEnum, ReferrerStatusEnum
from app.schemas.referrals import (
    AttributionRead,
    AuditEntryRead,
    CustomRateUpdate,
    FraudEvaluationRead,
    LedgerEventRead,
    MarkFraudulentIn,
    MemberCreate,
    MemberRead,
    MemberStatusChange,
    MemberSummary,
    PayoutBatchRead,
    PayoutLineRead,
    PayoutRequest,
    ProgramStats,
    ReassignCustomerIn,
    ReconciliationRead,
    ReconciliationReport,
    ReferralPolicyRead,
    ReferralPolicyUpdate,
    ReversalOutcomeRead,
)


router = APIRouter(prefix="/admin/referrals", tags=["admin"])

ALLOWED_STATUSES = {status_value.value for status_value in ReferrerStatusEnum}
ALLOWED_CLAWBACK_MODES = {mode.value for mode in ClawbackModeEnum}
ALLOWED_PAYOUT_CYCLES = {cycle.value for cycle in PayoutCycleEnum}


def _policy_read(policy) -> ReferralPolicyRead:
    return ReferralPolicyRead(
        is_enabled=bool(policy.is_enabled),
        tiers=policy.tiers_json or [],
        block_self_referral=bool(policy.block_self_referral),
        allow_code_change_before_first_order=bool(policy.allow_code_change_before_first_order),
        referral_validity_days=int(policy.referral_validity_days or 0),
        require_admin_approval=bool(policy.require_admin_approval),
        tier_progress_threshold=float(policy.tier_progress_threshold),
        fraud_rules=policy.fraud_rules_json or {},
        fraud_score_threshold=int(policy.fraud_score_threshold or 0),
        evaluate_fraud_on_write=bool(policy.evaluate_fraud_on_write),
        reversal_clawback_mode=policy.reversal_clawback_mode,
        payout_cycle=policy.payout_cycle,
        payout_day=int(policy.payout_day or 1),
        min_payout_amount=int(policy.min_payout_amount or 0),
        version=int(policy.version or 1),
        updated_at=policy.updated_at,
    )


def _member_read(referrer) -> MemberRead:
    return MemberRead(
        id=referrer.id,
        email=referrer.email,
        full_name=referrer.full_name,
        phone=referrer.phone,
        referral_code=referrer.referral_code,
        share_url=build_share_url(referrer.referral_code),
        status=referrer.status,
        suspension_reason=referrer.suspension_reason,
        activated_at=referrer.activated_at,
        lifetime_revenue=int(referrer.lifetime_revenue or 0),
        current_month_revenue=int(referrer.current_month_revenue or 0),
        revenue_period=referrer.revenue_period,
        referred_customer_count=int(referrer.referred_customer_count or 0),
        unpaid_commission=int(referrer.unpaid_commission or 0),
        paid_commission=int(referrer.paid_commission or 0),
        clawback_due=int(referrer.clawback_due or 0),
        last_payout_at=referrer.last_payout_at,
        fraud_score=int(referrer.fraud_score or 0),
        custom_rate=float(referrer.custom_rate) if referrer.custom_rate is not None else None,
        custom_rate_enabled=bool(referrer.custom_rate_enabled),
        created_at=referrer.created_at,
        updated_at=referrer.updated_at,
    )


def _require_referrer(db: Session, referrer_id: int):
    referrer = get_referrer(db, referrer_id=referrer_id)
    if referrer is None:
        raise ReferrerNotFound(referrer_id)
    return referrer


@router.get("/policy", response_model=ReferralPolicyRead)
def get_referral_policy(
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token()),
):
    policy = get_policy_row(db)
    if policy is None:
        raise PolicyUnavailable("no policy configured")
    return _policy_read(policy)


@router.put("/policy", response_model=ReferralPolicyRead)
def update_referral_policy(
    payload: ReferralPolicyUpdate,
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token()),
):
    updates = payload.model_dump(exclude_unset=True)
    if "reversal_clawback_mode" in updates and updates["reversal_clawback_mode"] not in ALLOWED_CLAWBACK_MODES:
        raise HTTPException(status_code=422, detail="Invalid clawback mode")
    if "payout_cycle" in updates and updates["payout_cycle"] not in ALLOWED_PAYOUT_CYCLES:
        raise HTTPException(status_code=422, detail="Invalid payout cycle")

    tiers = updates.pop("tiers", None)
    if tiers is None and get_policy_row(db) is None:
        tiers = [dict(tier) for tier in DEFAULT_TIERS]
    if tiers is not None:
        try:
            parse_tier_table(tiers)
        except PolicyUnavailable as exc:
            raise HTTPException(status_code=422, detail=exc.message) from None
        updates["tiers_json"] = tiers
    if "fraud_rules" in updates:
        fraud_rules = updates.pop("fraud_rules") or {}
        try:
            parse_fraud_rules(fraud_rules)
        except PolicyUnavailable as exc:
            raise HTTPException(status_code=422, detail=exc.message) from None
        updates["fraud_rules_json"] = fraud_rules
    policy = upsert_policy(db, payload=updates)
    return _policy_read(policy)


@router.post("/members", response_model=MemberRead, status_code=status.HTTP_201_CREATED)
def create_member(
    payload: MemberCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    policy = load_policy_snapshot(db)
    referrer = enroll_referrer(
        db,
        email=str(payload.email),
        full_name=payload.full_name,
        phone=payload.phone,
        referral_code=payload.referral_code,
        policy=policy,
        actor=actor,
    )
    return _member_read(referrer)


@router.get("/members", response_model=list[MemberRead])
def list_members(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token()),
):
    if status_filter and status_filter not in ALLOWED_STATUSES:
        raise HTTPException(status_code=422, detail="Invalid status")
    return [_member_read(referrer) for referrer in list_referrers(db, status=status_filter, limit=limit)]


@router.post("/members/{referrer_id}/approve", response_model=MemberRead)
def approve_referral_member(
    referrer_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    return _member_read(approve_member(db, referrer_id=referrer_id, actor=actor))


@router.post("/members/{referrer_id}/suspend", response_model=MemberRead)
def suspend_referral_member(
    referrer_id: int,
    payload: MemberStatusChange,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    return _member_read(suspend_member(db, referrer_id=referrer_id, actor=actor, reason=payload.reason))


@router.post("/members/{referrer_id}/reactivate", response_model=MemberRead)
def reactivate_referral_member(
    referrer_id: int,
    payload: MemberStatusChange,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    return _member_read(reactivate_member(db, referrer_id=referrer_id, actor=actor, reason=payload.reason))


@router.put("/members/{referrer_id}/custom-rate", response_model=MemberRead)
def update_custom_rate(
    referrer_id: int,
    payload: CustomRateUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    return _member_read(set_custom_rate(db, referrer_id=referrer_id, rate=payload.rate, actor=actor))


@router.delete("/members/{referrer_id}/custom-rate", response_model=MemberRead)
def remove_custom_rate(
    referrer_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    return _member_read(disable_custom_rate(db, referrer_id=referrer_id, actor=actor))


@router.get("/members/{referrer_id}/summary", response_model=MemberSummary)
def referral_member_summary(
    referrer_id: int,
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token()),
):
    referrer = _require_referrer(db, referrer_id)
    policy = load_policy_snapshot(db)
    return MemberSummary(**build_referrer_summary(db, referrer=referrer, policy=policy))


@router.get("/members/{referrer_id}/ledger", response_model=list[LedgerEventRead])
def referral_member_ledger(
    referrer_id: int,
    period: str | None = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token()),
):
    _require_referrer(db, referrer_id)
    events = list_events_for_referrer(db, referrer_id=referrer_id, period=period, limit=limit)
    return [event_read(event) for event in events]


@router.get("/members/{referrer_id}/audit", response_model=list[AuditEntryRead])
def referral_member_audit(
    referrer_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token()),
):
    _require_referrer(db, referrer_id)
    entries = list_audit_entries(db, referrer_id=referrer_id, limit=limit, offset=offset)
    return [
        AuditEntryRead(
            id=entry.id,
            referrer_id=entry.referrer_id,
            action=entry.action,
            ledger_event_id=entry.ledger_event_id,
            order_id=entry.order_id,
            amount=int(entry.amount or 0),
            unpaid_before=int(entry.unpaid_before),
            unpaid_after=int(entry.unpaid_after),
            paid_before=int(entry.paid_before),
            paid_after=int(entry.paid_after),
            actor=entry.actor,
            reason=entry.reason,
            metadata=entry.metadata_json,
            created_at=entry.created_at,
        )
        for entry in entries
    ]


@router.post("/members/{referrer_id}/fraud-evaluation", response_model=FraudEvaluationRead)
def run_fraud_evaluation(
    referrer_id: int,
    period: str | None = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    policy = load_policy_snapshot(db)
    review = evaluate_referrer(db, referrer_id=referrer_id, policy=policy, period=period, actor=actor)
    return FraudEvaluationRead(**review.to_dict())


@router.post("/ledger/{event_id}/mark-fraudulent", response_model=ReversalOutcomeRead)
def mark_event_fraudulent(
    event_id: int,
    payload: MarkFraudulentIn,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    policy = load_policy_snapshot(db)
    result = mark_fraudulent(db, event_id=event_id, policy=policy, actor=actor, reason=payload.reason)
    order_id = result.original.order_id if result.original is not None else ""
    return ReversalOutcomeRead(
        outcome=result.outcome,
        order_id=order_id,
        event=event_read(result.event),
        shortfall=result.shortfall,
        pending=result.pending is not None,
    )


@router.post("/customers/reassign", response_model=AttributionRead)
def reassign_referral_customer(
    payload: ReassignCustomerIn,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    link = reassign_customer(
        db,
        customer=CustomerIdentity(email=str(payload.customer_email), phone=payload.customer_phone),
        referrer_id=payload.referrer_id,
        actor=actor,
        reason=payload.reason,
    )
    return attribution_read(link)


@router.post("/payouts", response_model=PayoutBatchRead)
def settle_payouts(
    payload: PayoutRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token()),
):
    policy = load_policy_snapshot(db)
    batch = settle_payout_batch(db, policy=policy, actor=actor, referrer_ids=payload.referrer_ids)
    return PayoutBatchRead(
        batch_id=batch.batch_id,
        total_amount=batch.total_amount,
        paid_count=batch.paid_count,
        lines=[PayoutLineRead(**line.to_dict()) for line in batch.lines],
    )


@router.get("/reconciliation", response_model=ReconciliationReport)
def ledger_reconciliation(
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token()),
):
    results = reconcile_all(db)
    mismatches = [
        ReconciliationRead(
            referrer_id=result.referrer_id,
            unpaid_commission=result.unpaid_commission,
            paid_commission=result.paid_commission,
            clawback_due=result.clawback_due,
            ledger_total=result.ledger_total,
            difference=result.difference,
            ok=result.ok,
        )
        for result in results
        if not result.ok
    ]
    return ReconciliationReport(ok=not mismatches, checked=len(results), mismatches=mismatches)


@router.get("/stats", response_model=ProgramStats)
def referral_program_stats(
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token()),
):
    return ProgramStats(**build_program_stats(db))
