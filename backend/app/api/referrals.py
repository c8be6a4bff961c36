from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.dependencies import require_admin_token
from app.core.attribution import AttributionResult, CustomerIdentity
from app.core.db import get_db
from app.core.referral_engine import on_customer_registered, on_referral_code_applied
from app.schemas.referrals import (
    AttributionRead,
    AttributionResultRead,
    CustomerRegistrationIn,
    ReferralCodeApplyIn,
)


router = APIRouter(prefix="/referrals", tags=["referrals"])


def attribution_read(link) -> AttributionRead:
    return AttributionRead(
        id=link.id,
        customer_email=link.customer_email,
        customer_phone=link.customer_phone,
        referrer_id=link.referrer_id,
        referral_code=link.referral_code,
        attributed_at=link.attributed_at,
        locked=bool(link.locked),
        locked_at=link.locked_at,
    )


def _result_read(result: AttributionResult) -> AttributionResultRead:
    return AttributionResultRead(
        **attribution_read(result.link).model_dump(),
        created=result.created,
        changed=result.changed,
    )


@router.post("/attribute", response_model=AttributionResultRead)
def apply_referral_code(
    payload: ReferralCodeApplyIn,
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token("storefront")),
):
    customer = CustomerIdentity(email=str(payload.customer_email), phone=payload.customer_phone)
    return _result_read(on_referral_code_applied(db, customer, payload.referral_code))


@router.post("/members/{referrer_id}/customers", response_model=AttributionResultRead)
def register_referred_customer(
    referrer_id: int,
    payload: CustomerRegistrationIn,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token("referrer")),
):
    customer = CustomerIdentity(
        email=str(payload.customer_email) if payload.customer_email else None,
        phone=payload.customer_phone,
    )
    result = on_customer_registered(db, referrer_id=referrer_id, customer=customer, actor=actor)
    return _result_read(result)
