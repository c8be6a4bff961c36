from __future__ import annotations

from typing import Any

from app.models.notifications import ReferrerNotification


class NotificationSender:
    channel_type = "base"

    def send(
        self,
        *,
        notification: ReferrerNotification,
        payload: dict[str, Any],
        kind: str,
    ) -> None:
        raise NotImplementedError
