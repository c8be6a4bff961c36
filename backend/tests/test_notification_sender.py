import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ["SKIP_MIGRATIONS"] = "1"

import app.notifications.senders.webhook as webhook_module  # noqa: E402
from app.core.referral_notifications import notify_referrer  # noqa: E402
from app.jobs.notification_sender import run_notification_sender  # noqa: E402
from app.models.notifications import ReferrerNotification  # noqa: E402
from app.notifications.senders import get_sender  # noqa: E402
from tests.factories import make_referrer, setup_db  # noqa: E402


class _FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code


def _queue(db, referrer, **payload):
    return notify_referrer(
        db,
        referrer_id=referrer.id,
        kind="commission_earned",
        period="2026-01",
        dedupe_key=f"commission_earned:{referrer.id}:{len(payload)}",
        payload=payload or {"amount": 10_000},
    )


def test_registry_lookup():
    assert get_sender("LOG").channel_type == "log"
    assert get_sender("webhook").channel_type == "webhook"
    assert get_sender("pigeon") is None
    assert get_sender("") is None


def test_dedupe_key_blocks_second_request():
    SessionLocal = setup_db("notify_dedupe")
    with SessionLocal() as db:
        referrer = make_referrer(db)
        assert _queue(db, referrer) is not None
        assert _queue(db, referrer) is None
        assert db.query(ReferrerNotification).count() == 1


def test_log_sender_marks_sent():
    SessionLocal = setup_db("notify_log")
    with SessionLocal() as db:
        referrer = make_referrer(db)
        notification = _queue(db, referrer)

        processed = run_notification_sender(db, sender_name="log")

        assert processed == 1
        db.refresh(notification)
        assert notification.status == "sent"
        assert notification.attempt_count == 1
        assert notification.sent_at is not None


def test_webhook_sender_signs_payload(monkeypatch):
    SessionLocal = setup_db("notify_webhook")
    captured = {}

    def _fake_post(url, data=None, headers=None, timeout=None):
        captured["url"] = url
        captured["data"] = data
        captured["headers"] = headers
        return _FakeResponse(200)

    monkeypatch.setattr(webhook_module.requests, "post", _fake_post)
    monkeypatch.setattr(webhook_module.settings, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/referrals")
    monkeypatch.setattr(webhook_module.settings, "NOTIFICATION_WEBHOOK_SECRET", "s3cret")
    with SessionLocal() as db:
        referrer = make_referrer(db)
        referrer_id = referrer.id
        notification = _queue(db, referrer, amount=10_000, tier="0 - 10M")

        run_notification_sender(db, sender_name="webhook")

        db.refresh(notification)
        assert notification.status == "sent"
    assert captured["url"] == "https://hooks.example.com/referrals"
    body = json.loads(captured["data"])
    assert body["kind"] == "commission_earned"
    assert body["referrer_id"] == referrer_id
    assert body["payload"]["tier"] == "0 - 10M"
    headers = captured["headers"]
    expected = webhook_module._sign_payload("s3cret", headers["X-Timestamp"], captured["data"])
    assert headers["X-Signature"] == expected


def test_failed_delivery_backs_off_then_fails(monkeypatch):
    SessionLocal = setup_db("notify_backoff")
    monkeypatch.setattr(webhook_module.requests, "post", lambda *args, **kwargs: _FakeResponse(500))
    monkeypatch.setattr(webhook_module.settings, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/referrals")
    with SessionLocal() as db:
        referrer = make_referrer(db)
        notification = _queue(db, referrer)

        assert run_notification_sender(db, sender_name="webhook", max_attempts=2) == 1
        db.refresh(notification)
        assert notification.status == "queued"
        assert notification.attempt_count == 1
        assert "500" in notification.error_message

        # Still inside the backoff window.
        assert run_notification_sender(db, sender_name="webhook", max_attempts=2) == 0

        run_notification_sender(db, sender_name="webhook", max_attempts=2, base_backoff_seconds=0)
        db.refresh(notification)
        assert notification.status == "failed"
        assert notification.attempt_count == 2


def test_unknown_sender_fails_notification():
    SessionLocal = setup_db("notify_unknown")
    with SessionLocal() as db:
        referrer = make_referrer(db)
        notification = _queue(db, referrer)

        run_notification_sender(db, sender_name="pigeon")

        db.refresh(notification)
        assert notification.status == "failed"
        assert notification.error_message == "unsupported_channel_type"
