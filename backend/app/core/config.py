# Central place for all configurable settings. We use Pydantic's
# BaseSettings so values can be read from env vars or a .env file.
# Program policy (tiers, fraud rules) lives in the database; only
# process-level knobs belong here.

import json
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def safe_json_loads(value):
    try:
        return json.loads(value)
    except Exception:
        return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_json_loads=safe_json_loads,
    )

    # Core DB connection string, like sqlite:///./ledger.db or Postgres URL.
    DATABASE_URL: str

    # Toggle SQLAlchemy echo logs. Useful for debugging queries locally.
    DB_ECHO: bool = False

    # Shared token for the order ingest hooks and the admin surface.
    # Requests are rejected while this is unset.
    ADMIN_API_TOKEN: Optional[str] = None
    ADMIN_TOKEN_HEADER: str = "X-Admin-Token"

    LOG_LEVEL: str = "INFO"

    # Used when building share links for referral codes.
    APP_BASE_URL: Optional[str] = None

    # Optimistic-concurrency retries for a single balance mutation.
    LEDGER_MAX_RETRIES: int = Field(default=3, gt=0)

    # Reversals that arrive before their commission are retried this
    # many times by the sweeper before they expire.
    PENDING_REVERSAL_MAX_ATTEMPTS: int = Field(default=10, gt=0)

    # Added to a referrer's fraud score when an admin marks an event fraudulent.
    FRAUD_MARK_SCORE_PENALTY: int = Field(default=25, ge=0)

    # Seed a default program policy when none exists. Off by default so a
    # missing policy aborts instead of silently guessing in production.
    REFERRAL_POLICY_AUTOSEED: bool = False

    # Outbound notification delivery.
    NOTIFICATION_SENDER: str = "log"
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_WEBHOOK_SECRET: Optional[str] = None

    @field_validator("NOTIFICATION_SENDER", mode="before")
    @classmethod
    def _normalize_sender(cls, value):
        if isinstance(value, str):
            return value.strip().lower() or "log"
        return value

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, value):
        if isinstance(value, str):
            return value.strip().upper() or "INFO"
        return value


# Instantiate a single settings object for app-wide import.
# Any module can just `from app.core.config import settings`.
settings = Settings()
