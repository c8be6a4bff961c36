from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
from typing import Any

import requests

from app.core.config import settings
from app.models.notifications import ReferrerNotification
from app.notifications.senders.base import NotificationSender


def _encode_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def _sign_payload(secret: str, timestamp: str, body: str) -> str:
    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class WebhookSender(NotificationSender):
    channel_type = "webhook"

    def __init__(self, url: str | None = None, secret: str | None = None):
        self._url = url
        self._secret = secret

    def send(
        self,
        *,
        notification: ReferrerNotification,
        payload: dict[str, Any],
        kind: str,
    ) -> None:
        url = self._url or settings.NOTIFICATION_WEBHOOK_URL
        if not url:
            raise ValueError("Webhook URL not configured")
        secret = self._secret or settings.NOTIFICATION_WEBHOOK_SECRET
        body = _encode_payload(
            {
                "notification_id": notification.id,
                "referrer_id": notification.referrer_id,
                "kind": kind,
                "period": notification.period,
                "payload": payload,
            }
        )
        headers = {"Content-Type": "application/json"}
        if secret:
            timestamp = str(int(datetime.now(timezone.utc).timestamp()))
            headers["X-Timestamp"] = timestamp
            headers["X-Signature"] = _sign_payload(secret, timestamp, body)
        resp = requests.post(url, data=body, headers=headers, timeout=10)
        if resp.status_code >= 400:
            raise ValueError(f"Webhook failed with status {resp.status_code}")
