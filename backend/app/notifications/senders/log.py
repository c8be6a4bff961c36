from __future__ import annotations

import logging
from typing import Any

from app.models.notifications import ReferrerNotification
from app.notifications.senders.base import NotificationSender


logger = logging.getLogger("referral_notifications")


class LogSender(NotificationSender):
    """Writes the notification to the structured log instead of delivering it."""

    channel_type = "log"

    def send(
        self,
        *,
        notification: ReferrerNotification,
        payload: dict[str, Any],
        kind: str,
    ) -> None:
        logger.info(
            "notification.delivered",
            extra={
                "notification_id": notification.id,
                "referrer_id": notification.referrer_id,
                "kind": kind,
                "payload": payload,
            },
        )
