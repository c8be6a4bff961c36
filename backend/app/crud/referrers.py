from __future__ import annotations

from sqlalchemy.orm import Session

from app.models.referrers import AttributionLink, Referrer


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip().lower() or None


def normalize_phone(value: str | None) -> str | None:
    if not value:
        return None
    digits = "".join(ch for ch in value if ch.isdigit())
    return digits or None


def normalize_code(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip().lower() or None


def create_referrer(
    db: Session,
    *,
    email: str,
    referral_code: str,
    status: str,
    full_name: str | None = None,
    phone: str | None = None,
    activated_at=None,
    commit: bool = True,
) -> Referrer:
    referrer = Referrer(
        email=normalize_email(email),
        full_name=full_name,
        phone=normalize_phone(phone),
        referral_code=normalize_code(referral_code),
        status=status,
        activated_at=activated_at,
    )
    db.add(referrer)
    if commit:
        db.commit()
        db.refresh(referrer)
    else:
        db.flush()
    return referrer


def get_referrer(db: Session, *, referrer_id: int) -> Referrer | None:
    return db.query(Referrer).filter(Referrer.id == referrer_id).first()


def get_referrer_by_code(db: Session, *, code: str) -> Referrer | None:
    code = normalize_code(code)
    if not code:
        return None
    return db.query(Referrer).filter(Referrer.referral_code == code).first()


def get_referrer_by_email(db: Session, *, email: str) -> Referrer | None:
    email = normalize_email(email)
    if not email:
        return None
    return db.query(Referrer).filter(Referrer.email == email).first()


def list_referrers(db: Session, *, status: str | None = None, limit: int = 500) -> list[Referrer]:
    query = db.query(Referrer)
    if status:
        query = query.filter(Referrer.status == status)
    return query.order_by(Referrer.created_at.desc(), Referrer.id.desc()).limit(limit).all()


def get_attribution_for_customer(
    db: Session,
    *,
    customer_email: str | None,
    customer_phone: str | None = None,
) -> AttributionLink | None:
    """Look the customer up by email, then by phone among links registered without one."""
    customer_email = normalize_email(customer_email)
    if customer_email:
        link = (
            db.query(AttributionLink)
            .filter(AttributionLink.customer_email == customer_email)
            .first()
        )
        if link is not None:
            return link
    customer_phone = normalize_phone(customer_phone)
    if not customer_phone:
        return None
    return (
        db.query(AttributionLink)
        .filter(
            AttributionLink.customer_phone == customer_phone,
            AttributionLink.customer_email.is_(None),
        )
        .order_by(AttributionLink.id.asc())
        .first()
    )


def list_attributions_for_referrer(db: Session, *, referrer_id: int) -> list[AttributionLink]:
    return (
        db.query(AttributionLink)
        .filter(AttributionLink.referrer_id == referrer_id)
        .order_by(AttributionLink.attributed_at.desc())
        .all()
    )


def get_attribution_by_phone(db: Session, *, customer_phone: str | None) -> AttributionLink | None:
    customer_phone = normalize_phone(customer_phone)
    if not customer_phone:
        return None
    return (
        db.query(AttributionLink)
        .filter(AttributionLink.customer_phone == customer_phone)
        .order_by(AttributionLink.id.asc())
        .first()
    )
