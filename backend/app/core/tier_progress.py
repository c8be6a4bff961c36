from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.core.program_policy import PolicySnapshot, TierBand, find_band, next_band
from app.core.referral_notifications import notify_referrer, tier_progress_dedupe_key
from app.crud.notifications import has_notification_for_period
from app.models.enums import NotificationKindEnum
from app.models.referrers import Referrer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierProgress:
    current_tier: TierBand
    next_tier: TierBand | None
    progress: float | None
    remaining_amount: int | None


@dataclass
class TierProgressResult:
    should_notify: bool
    next_tier: TierBand | None = None
    remaining_amount: int | None = None
    progress: float | None = None
    notified: bool = False


def compute_tier_progress(revenue: int, tiers: tuple[TierBand, ...]) -> TierProgress:
    """Fraction of the way from the current band's floor to the next band."""
    revenue = max(int(revenue), 0)
    band = find_band(revenue, tiers)
    upcoming = next_band(band, tiers)
    if upcoming is None or band.max_amount is None:
        return TierProgress(current_tier=band, next_tier=None, progress=None, remaining_amount=None)
    span = band.max_amount - band.min_amount
    progress = (revenue - band.min_amount) / span
    return TierProgress(
        current_tier=band,
        next_tier=upcoming,
        progress=progress,
        remaining_amount=band.max_amount - revenue,
    )


def check_tier_progress(
    db: Session,
    *,
    referrer: Referrer,
    revenue: int,
    policy: PolicySnapshot,
    period: str,
    notify: bool = True,
) -> TierProgressResult:
    state = compute_tier_progress(revenue, policy.tiers)
    if state.next_tier is None or state.progress is None:
        return TierProgressResult(should_notify=False, progress=None)
    result = TierProgressResult(
        should_notify=False,
        next_tier=state.next_tier,
        remaining_amount=state.remaining_amount,
        progress=round(state.progress, 4),
    )
    if state.progress < policy.tier_progress_threshold:
        return result
    kind = NotificationKindEnum.TIER_PROGRESS.value
    if has_notification_for_period(db, referrer_id=referrer.id, kind=kind, period=period):
        return result
    result.should_notify = True
    if not notify:
        return result

    notification = notify_referrer(
        db,
        referrer_id=referrer.id,
        kind=kind,
        period=period,
        dedupe_key=tier_progress_dedupe_key(referrer.id, period),
        payload={
            "current_tier": state.current_tier.label,
            "next_tier": state.next_tier.label,
            "next_rate": float(state.next_tier.rate),
            "remaining_amount": state.remaining_amount,
            "progress": result.progress,
            "period": period,
        },
    )
    result.notified = notification is not None
    if result.notified:
        logger.info(
            "tier_progress.notified",
            extra={
                "referrer_id": referrer.id,
                "period": period,
                "next_tier": state.next_tier.label,
                "progress": result.progress,
            },
        )
    return result
