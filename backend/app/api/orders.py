from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.dependencies import require_admin_token
from app.core.db import get_db
from app.core.orders import OrderFinalized
from app.core.referral_engine import on_order_finalized, on_order_reversed
from app.schemas.referrals import (
    LedgerEventRead,
    OrderFinalizedIn,
    OrderOutcomeRead,
    OrderReversedIn,
    ReversalOutcomeRead,
)


router = APIRouter(prefix="/orders", tags=["orders"])
logger = logging.getLogger(__name__)


def event_read(event) -> LedgerEventRead | None:
    if event is None:
        return None
    return LedgerEventRead(
        id=event.id,
        referrer_id=event.referrer_id,
        order_id=event.order_id,
        order_amount=int(event.order_amount),
        tier_label=event.tier_label,
        commission_rate=float(event.commission_rate),
        amount=int(event.amount),
        event_kind=event.event_kind,
        status=event.status,
        period=event.period,
        reversed=bool(event.reversed),
        reversal_reason=event.reversal_reason,
        reversed_at=event.reversed_at,
        reverses_event_id=event.reverses_event_id,
        requires_review=bool(event.requires_review),
        payout_batch_id=event.payout_batch_id,
        paid_at=event.paid_at,
        created_at=event.created_at,
    )


@router.post("/finalized", response_model=OrderOutcomeRead)
def order_finalized(
    payload: OrderFinalizedIn,
    db: Session = Depends(get_db),
    _actor: str = Depends(require_admin_token("checkout")),
):
    order = OrderFinalized(
        order_id=payload.order_id,
        customer_email=str(payload.customer_email),
        order_amount=payload.order_amount,
        finalized_at=payload.finalized_at,
        customer_phone=payload.customer_phone,
        referral_code=payload.referral_code,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
    )
    outcome = on_order_finalized(db, order)
    return OrderOutcomeRead(
        outcome=outcome.outcome,
        order_id=outcome.order_id,
        referrer_id=outcome.referrer_id,
        event=event_read(outcome.event),
        reversal_outcome=outcome.reversal.outcome if outcome.reversal else None,
        tier_progress_notified=bool(outcome.tier_progress and outcome.tier_progress.notified),
    )


@router.post("/reversed", response_model=ReversalOutcomeRead)
def order_reversed(
    payload: OrderReversedIn,
    db: Session = Depends(get_db),
    actor: str = Depends(require_admin_token("checkout")),
):
    result = on_order_reversed(db, payload.order_id, payload.reason, actor=actor)
    return ReversalOutcomeRead(
        outcome=result.outcome,
        order_id=payload.order_id,
        event=event_read(result.event),
        shortfall=result.shortfall,
        pending=result.pending is not None,
    )
