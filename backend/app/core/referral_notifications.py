from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.metrics import record_notification_requested
from app.core.time import period_for, utcnow
from app.crud.notifications import create_notification, get_notification_by_dedupe_key
from app.models.enums import NotificationKindEnum
from app.models.notifications import ReferrerNotification


logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = {kind.value for kind in NotificationKindEnum}


def tier_progress_dedupe_key(referrer_id: int, period: str) -> str:
    return f"{NotificationKindEnum.TIER_PROGRESS.value}:{referrer_id}:{period}"


def fraud_alert_dedupe_key(referrer_id: int, period: str) -> str:
    return f"{NotificationKindEnum.FRAUD_ALERT.value}:{referrer_id}:{period}"


def notify_referrer(
    db: Session,
    *,
    referrer_id: int,
    kind: str,
    payload: dict[str, Any],
    period: str | None = None,
    dedupe_key: str | None = None,
) -> ReferrerNotification | None:
    """Write a notification request to the outbox.

    Returns ``None`` when a row with the same dedupe key already exists.
    """
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f"Unknown notification kind: {kind}")
    period = period or period_for(utcnow())
    if dedupe_key is None:
        marker = payload.get("event_id") or payload.get("order_id") or utcnow().isoformat()
        dedupe_key = f"{kind}:{referrer_id}:{marker}"
    if get_notification_by_dedupe_key(db, dedupe_key=dedupe_key) is not None:
        return None
    try:
        notification = create_notification(
            db,
            referrer_id=referrer_id,
            kind=kind,
            period=period,
            payload=payload,
            dedupe_key=dedupe_key,
        )
    except IntegrityError:
        db.rollback()
        logger.info(
            "notification.deduplicated",
            extra={"referrer_id": referrer_id, "kind": kind, "dedupe_key": dedupe_key},
        )
        return None
    record_notification_requested(kind)
    logger.info(
        "notification.requested",
        extra={
            "referrer_id": referrer_id,
            "kind": kind,
            "period": period,
            "notification_id": notification.id,
        },
    )
    return notification


def notify_referrer_safely(db: Session, **kwargs) -> ReferrerNotification | None:
    """Best-effort wrapper for post-commit hooks; never raises into the ledger path."""
    try:
        return notify_referrer(db, **kwargs)
    except (SQLAlchemyError, ValueError) as exc:
        db.rollback()
        logger.warning(
            "notification.request_failed",
            extra={
                "referrer_id": kwargs.get("referrer_id"),
                "kind": kwargs.get("kind"),
                "error": str(exc),
            },
        )
        return None
