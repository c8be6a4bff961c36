import os

import pytest
from pydantic import ValidationError

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ["SKIP_MIGRATIONS"] = "1"

from app.core.config import Settings  # noqa: E402


def test_settings_defaults(monkeypatch):
    for key in ("ADMIN_API_TOKEN", "NOTIFICATION_SENDER", "LEDGER_MAX_RETRIES", "LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)
    cfg = Settings(_env_file=None)
    assert cfg.ADMIN_API_TOKEN is None
    assert cfg.ADMIN_TOKEN_HEADER == "X-Admin-Token"
    assert cfg.LEDGER_MAX_RETRIES == 3
    assert cfg.PENDING_REVERSAL_MAX_ATTEMPTS == 10
    assert cfg.FRAUD_MARK_SCORE_PENALTY == 25
    assert cfg.REFERRAL_POLICY_AUTOSEED is False
    assert cfg.NOTIFICATION_SENDER == "log"
    assert cfg.LOG_LEVEL == "INFO"


def test_settings_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("ADMIN_API_TOKEN", "override")
    monkeypatch.setenv("LEDGER_MAX_RETRIES", "5")
    monkeypatch.setenv("REFERRAL_POLICY_AUTOSEED", "true")
    monkeypatch.setenv("NOTIFICATION_SENDER", "  Webhook ")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    cfg = Settings(_env_file=None)
    assert cfg.DATABASE_URL == "sqlite:///:memory:"
    assert cfg.ADMIN_API_TOKEN == "override"
    assert cfg.LEDGER_MAX_RETRIES == 5
    assert cfg.REFERRAL_POLICY_AUTOSEED is True
    assert cfg.NOTIFICATION_SENDER == "webhook"
    assert cfg.LOG_LEVEL == "DEBUG"


def test_retry_count_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, LEDGER_MAX_RETRIES=0)


def test_database_url_is_required(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
