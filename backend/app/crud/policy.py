from __future__ import annotations

from sqlalchemy.orm import Session

from app.models.policy import ReferralProgramPolicy


# Bands are [min, max) in minor currency units; max=None is open-ended.
DEFAULT_TIERS = [
    {"min": 0, "max": 10_000_000, "rate": 1, "label": "0 - 10M"},
    {"min": 10_000_000, "max": 50_000_000, "rate": 2, "label": "10M - 50M"},
    {"min": 50_000_000, "max": None, "rate": 3, "label": "> 50M"},
]

DEFAULT_FRAUD_RULES = {
    "shared_address": {"threshold": 2, "weight": 30},
    "shared_phone": {"threshold": 1, "weight": 25},
    "cod_uncollected": {"threshold": 3, "weight": 20},
    "end_of_period_concentration": {
        "threshold": 0.7,
        "final_days": 3,
        "min_orders": 5,
        "weight": 35,
    },
    "order_spike": {"threshold": 5, "weight": 20},
}


def get_policy_row(db: Session) -> ReferralProgramPolicy | None:
    return db.query(ReferralProgramPolicy).order_by(ReferralProgramPolicy.id.asc()).first()


def upsert_policy(db: Session, *, payload: dict) -> ReferralProgramPolicy:
    policy = get_policy_row(db)
    if not policy:
        policy = ReferralProgramPolicy(**payload)
        db.add(policy)
    else:
        for key, value in payload.items():
            setattr(policy, key, value)
    db.commit()
    db.refresh(policy)
    return policy


def seed_default_policy(db: Session) -> ReferralProgramPolicy:
    return upsert_policy(
        db,
        payload={
            "is_enabled": True,
            "tiers_json": [dict(tier) for tier in DEFAULT_TIERS],
            "fraud_rules_json": {key: dict(value) for key, value in DEFAULT_FRAUD_RULES.items()},
        },
    )
