import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ["SKIP_MIGRATIONS"] = "1"

from app.core.tier_progress import check_tier_progress, compute_tier_progress  # noqa: E402
from app.crud.notifications import list_notifications_for_referrer  # noqa: E402
from tests.factories import make_referrer, make_snapshot, setup_db  # noqa: E402


def test_progress_within_first_band():
    policy = make_snapshot()
    state = compute_tier_progress(8_500_000, policy.tiers)
    assert state.current_tier.label == "0 - 10M"
    assert state.next_tier.label == "10M - 50M"
    assert state.progress == 0.85
    assert state.remaining_amount == 1_500_000


def test_progress_is_relative_to_band_floor():
    policy = make_snapshot()
    state = compute_tier_progress(30_000_000, policy.tiers)
    assert state.current_tier.label == "10M - 50M"
    assert state.progress == 0.5
    assert state.remaining_amount == 20_000_000


def test_top_band_has_no_next_tier():
    policy = make_snapshot()
    state = compute_tier_progress(75_000_000, policy.tiers)
    assert state.next_tier is None
    assert state.progress is None
    assert state.remaining_amount is None


def test_below_threshold_does_not_notify():
    SessionLocal = setup_db("tier_below")
    policy = make_snapshot(tier_progress_threshold=0.8)
    with SessionLocal() as db:
        referrer = make_referrer(db)
        result = check_tier_progress(db, referrer=referrer, revenue=5_000_000, policy=policy, period="2026-01")
        assert result.should_notify is False
        assert result.progress == 0.5
        assert list_notifications_for_referrer(db, referrer_id=referrer.id) == []


def test_notifies_once_per_period():
    SessionLocal = setup_db("tier_once")
    policy = make_snapshot(tier_progress_threshold=0.8)
    with SessionLocal() as db:
        referrer = make_referrer(db)

        first = check_tier_progress(db, referrer=referrer, revenue=8_200_000, policy=policy, period="2026-01")
        second = check_tier_progress(db, referrer=referrer, revenue=9_100_000, policy=policy, period="2026-01")
        next_month = check_tier_progress(db, referrer=referrer, revenue=8_900_000, policy=policy, period="2026-02")

        assert first.should_notify is True
        assert first.notified is True
        assert second.should_notify is False
        assert next_month.notified is True
        notifications = list_notifications_for_referrer(db, referrer_id=referrer.id, kind="tier_progress")
        assert [item.period for item in notifications] == ["2026-01", "2026-02"]
        payload = notifications[0].payload_json
        assert payload["next_tier"] == "10M - 50M"
        assert payload["remaining_amount"] == 1_800_000
        assert notifications[0].dedupe_key == f"tier_progress:{referrer.id}:2026-01"


def test_dry_run_reports_without_writing():
    SessionLocal = setup_db("tier_dry_run")
    policy = make_snapshot()
    with SessionLocal() as db:
        referrer = make_referrer(db)
        result = check_tier_progress(
            db,
            referrer=referrer,
            revenue=9_000_000,
            policy=policy,
            period="2026-01",
            notify=False,
        )
        assert result.should_notify is True
        assert result.notified is False
        assert list_notifications_for_referrer(db, referrer_id=referrer.id) == []


def test_threshold_compares_unrounded_progress():
    SessionLocal = setup_db("tier_boundary")
    policy = make_snapshot(tier_progress_threshold=0.8)
    with SessionLocal() as db:
        referrer = make_referrer(db)
        state = compute_tier_progress(7_999_950, policy.tiers)
        assert state.progress < 0.8

        result = check_tier_progress(db, referrer=referrer, revenue=7_999_950, policy=policy, period="2026-01")

        assert result.should_notify is False
        assert result.notified is False
        assert list_notifications_for_referrer(db, referrer_id=referrer.id) == []

        at_threshold = check_tier_progress(db, referrer=referrer, revenue=8_000_000, policy=policy, period="2026-01")
        assert at_threshold.notified is True
