from datetime import datetime
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.db import Base
from app.core.orders import OrderFinalized
from app.core.program_policy import PolicySnapshot, parse_fraud_rules, parse_tier_table
from app.core.time import utcnow
from app.crud.policy import DEFAULT_FRAUD_RULES, DEFAULT_TIERS, upsert_policy
from app.crud.referrers import create_referrer
from app.models import (  # noqa: F401  registers tables on Base.metadata
    AttributionLink,
    CommissionLedgerEvent,
    ReferralProgramPolicy,
    Referrer,
    ReferrerNotification,
)


def setup_db(prefix: str = "referral"):
    db_url = f"sqlite:///./{prefix}_{uuid4().hex}.db"
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False},
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def make_snapshot(**overrides) -> PolicySnapshot:
    tiers = overrides.pop("tiers", None) or [dict(tier) for tier in DEFAULT_TIERS]
    fraud_rules = overrides.pop("fraud_rules", None)
    values = {
        "tiers": parse_tier_table(tiers),
        "fraud_rules": parse_fraud_rules(fraud_rules),
        "require_admin_approval": False,
    }
    values.update(overrides)
    return PolicySnapshot(**values)


def make_policy(db, **overrides) -> ReferralProgramPolicy:
    payload = {
        "is_enabled": True,
        "tiers_json": [dict(tier) for tier in DEFAULT_TIERS],
        "fraud_rules_json": {key: dict(value) for key, value in DEFAULT_FRAUD_RULES.items()},
        "require_admin_approval": False,
    }
    payload.update(overrides)
    return upsert_policy(db, payload=payload)


def make_referrer(
    db,
    *,
    email: str | None = None,
    code: str | None = None,
    status: str = "active",
    phone: str | None = None,
    full_name: str | None = None,
) -> Referrer:
    token = uuid4().hex[:8]
    return create_referrer(
        db,
        email=email or f"referrer_{token}@example.com",
        referral_code=code or f"ref_{token}",
        status=status,
        phone=phone,
        full_name=full_name,
        activated_at=utcnow() if status == "active" else None,
    )


def make_order(
    *,
    customer_email: str | None = None,
    order_amount: int = 100_000,
    order_id: str | None = None,
    referral_code: str | None = None,
    finalized_at: datetime | None = None,
    **extra,
) -> OrderFinalized:
    return OrderFinalized(
        order_id=order_id or f"ord_{uuid4().hex[:10]}",
        customer_email=customer_email or f"customer_{uuid4().hex[:8]}@example.com",
        order_amount=order_amount,
        referral_code=referral_code,
        finalized_at=finalized_at,
        **extra,
    )


def make_link(db, *, referrer: Referrer, customer_email: str, locked: bool = False, attributed_at=None):
    link = AttributionLink(
        customer_email=customer_email.lower(),
        referrer_id=referrer.id,
        referral_code=referrer.referral_code,
        attributed_at=attributed_at or utcnow(),
        locked=locked,
    )
    db.add(link)
    referrer.referred_customer_count = int(referrer.referred_customer_count or 0) + 1
    db.commit()
    db.refresh(link)
    return link
