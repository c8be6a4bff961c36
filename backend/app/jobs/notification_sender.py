from __future__ import annotations

import argparse
import logging
from datetime import timedelta, timezone

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.metrics import record_job_run, record_notification_delivery
from app.core.time import utcnow
from app.models.enums import NotificationStatusEnum
from app.models.notifications import ReferrerNotification
from app.notifications.senders import get_sender


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_SECONDS = 60


def _can_attempt(notification: ReferrerNotification, now, base_backoff_seconds: int) -> bool:
    if notification.attempt_count <= 0:
        return True
    created_at = notification.created_at
    if created_at.tzinfo is None and getattr(now, "tzinfo", None) is not None:
        now = now.replace(tzinfo=None)
    elif created_at.tzinfo is not None and getattr(now, "tzinfo", None) is None:
        created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
    delay = base_backoff_seconds * (2 ** max(notification.attempt_count - 1, 0))
    next_allowed = created_at + timedelta(seconds=delay)
    return now >= next_allowed


def run_notification_sender(
    db: Session,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_backoff_seconds: int = DEFAULT_BACKOFF_SECONDS,
    sender_name: str | None = None,
) -> int:
    now = utcnow()
    channel_type = sender_name or settings.NOTIFICATION_SENDER
    notifications = (
        db.query(ReferrerNotification)
        .filter(ReferrerNotification.status == NotificationStatusEnum.QUEUED.value)
        .order_by(ReferrerNotification.created_at.asc())
        .limit(batch_size)
        .all()
    )
    processed = 0
    for notification in notifications:
        if notification.attempt_count >= max_attempts:
            notification.status = NotificationStatusEnum.FAILED.value
            notification.error_message = "max_attempts_exceeded"
            processed += 1
            continue
        if not _can_attempt(notification, now, base_backoff_seconds):
            continue

        sender = get_sender(channel_type)
        if sender is None:
            notification.status = NotificationStatusEnum.FAILED.value
            notification.error_message = "unsupported_channel_type"
            processed += 1
            continue

        notification.attempt_count += 1
        payload = notification.payload_json if isinstance(notification.payload_json, dict) else {}
        try:
            sender.send(notification=notification, payload=payload, kind=notification.kind)
        except Exception as exc:
            notification.error_message = str(exc)
            record_notification_delivery(
                channel_type=channel_type,
                trigger_type=notification.kind,
                success=False,
            )
            logger.warning(
                "notification.delivery_failed",
                extra={
                    "notification_id": notification.id,
                    "attempt": notification.attempt_count,
                    "error": str(exc),
                },
            )
            if notification.attempt_count >= max_attempts:
                notification.status = NotificationStatusEnum.FAILED.value
            processed += 1
            continue

        notification.status = NotificationStatusEnum.SENT.value
        notification.sent_at = now
        notification.error_message = None
        record_notification_delivery(
            channel_type=channel_type,
            trigger_type=notification.kind,
            success=True,
        )
        processed += 1

    if processed:
        db.commit()
    return processed


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send queued referrer notifications.")
    parser.add_argument("--once", action="store_true", help="Run once and exit.")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS)
    parser.add_argument("--backoff-seconds", type=int, default=DEFAULT_BACKOFF_SECONDS)
    parser.add_argument("--sender", default=None, help="Override NOTIFICATION_SENDER.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    processed = 0
    success = True
    try:
        with SessionLocal() as db:
            processed = run_notification_sender(
                db,
                batch_size=args.batch_size,
                max_attempts=args.max_attempts,
                base_backoff_seconds=args.backoff_seconds,
                sender_name=args.sender,
            )
        logger.info("Notification sender run complete. processed=%s", processed)
    except Exception:
        success = False
        logger.exception("Notification sender failed")
        raise
    finally:
        record_job_run(job_name="notification_sender", success=success)
    if args.once:
        return


if __name__ == "__main__":
    main()
