from __future__ import annotations

from sqlalchemy.orm import Session

from app.models.notifications import ReferrerNotification


def get_notification_by_dedupe_key(db: Session, *, dedupe_key: str) -> ReferrerNotification | None:
    return (
        db.query(ReferrerNotification)
        .filter(ReferrerNotification.dedupe_key == dedupe_key)
        .first()
    )


def has_notification_for_period(db: Session, *, referrer_id: int, kind: str, period: str) -> bool:
    return (
        db.query(ReferrerNotification.id)
        .filter(
            ReferrerNotification.referrer_id == referrer_id,
            ReferrerNotification.kind == kind,
            ReferrerNotification.period == period,
        )
        .first()
        is not None
    )


def create_notification(
    db: Session,
    *,
    referrer_id: int,
    kind: str,
    period: str,
    payload: dict,
    dedupe_key: str,
) -> ReferrerNotification:
    notification = ReferrerNotification(
        referrer_id=referrer_id,
        kind=kind,
        period=period,
        payload_json=payload,
        dedupe_key=dedupe_key,
        status="queued",
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def list_notifications_for_referrer(db: Session, *, referrer_id: int, kind: str | None = None) -> list[ReferrerNotification]:
    query = db.query(ReferrerNotification).filter(ReferrerNotification.referrer_id == referrer_id)
    if kind:
        query = query.filter(ReferrerNotification.kind == kind)
    return query.order_by(ReferrerNotification.id.asc()).all()
