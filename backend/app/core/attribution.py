from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.concurrency import referrer_lock, run_with_version_retry
from app.core.config import settings
from app.core.program_policy import PolicySnapshot
from app.core.referral_errors import (
    CustomerAlreadyAttributed,
    InvalidCode,
    InvalidCustomerPhone,
    ReferrerInactive,
    ReferrerNotFound,
    SelfReferral,
)
from app.core.time import utcnow
from app.crud.ledger import add_audit_entry
from app.crud.referrers import (
    get_attribution_for_customer,
    get_attribution_by_phone,
    get_referrer,
    get_referrer_by_code,
    normalize_code,
    normalize_email,
    normalize_phone,
)
from app.models.enums import ATTRIBUTABLE_STATUSES, AuditActionEnum, ReferrerStatusEnum
from app.models.referrers import AttributionLink, Referrer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomerIdentity:
    email: str | None
    phone: str | None = None

    @property
    def normalized_email(self) -> str | None:
        return normalize_email(self.email)

    @property
    def normalized_phone(self) -> str | None:
        return normalize_phone(self.phone)


@dataclass
class AttributionResult:
    referrer: Referrer
    link: AttributionLink
    created: bool = False
    changed: bool = False


def generate_referral_code() -> str:
    token = secrets.token_urlsafe(6).replace("-", "").replace("_", "")
    return f"ref_{token.lower()}"


def build_share_url(code: str) -> str:
    base = settings.APP_BASE_URL or "http://localhost:3000"
    return f"{base.rstrip('/')}/?ref={code}"


def is_self_referral(referrer: Referrer, customer: CustomerIdentity) -> bool:
    email = customer.normalized_email
    if email and referrer.email and email == referrer.email:
        return True
    phone = customer.normalized_phone
    return bool(phone and referrer.phone and phone == referrer.phone)


def _bump_count(referrer: Referrer, delta: int) -> None:
    referrer.referred_customer_count = max(int(referrer.referred_customer_count or 0) + delta, 0)


def resolve_attribution(
    db: Session,
    *,
    code: str | None,
    customer: CustomerIdentity,
    policy: PolicySnapshot,
) -> AttributionResult:
    """Validate ``code`` and attach the customer to its owner.

    A locked link is final and the supplied code is ignored. An unlocked
    link is only moved when the policy allows code changes before the
    first order; otherwise the first referrer is kept.
    """
    if not normalize_code(code):
        raise InvalidCode(code)
    referrer = get_referrer_by_code(db, code=code)
    if referrer is None or referrer.status not in ATTRIBUTABLE_STATUSES:
        raise InvalidCode(code)
    if policy.block_self_referral and is_self_referral(referrer, customer):
        logger.info(
            "attribution.self_referral_blocked",
            extra={"referrer_id": referrer.id, "customer_email": customer.normalized_email},
        )
        raise SelfReferral()

    customer_email = customer.normalized_email
    link = get_attribution_for_customer(db, customer_email=customer_email, customer_phone=customer.phone)
    if link is not None:
        if link.referrer_id == referrer.id:
            return AttributionResult(referrer=referrer, link=link)
        if link.locked or not policy.allow_code_change_before_first_order:
            existing = get_referrer(db, referrer_id=link.referrer_id)
            logger.info(
                "attribution.kept",
                extra={
                    "referrer_id": link.referrer_id,
                    "ignored_referrer_id": referrer.id,
                    "locked": bool(link.locked),
                },
            )
            return AttributionResult(referrer=existing, link=link)
        return _move_link(db, link=link, referrer=referrer, code=code)
    return _create_link(db, referrer=referrer, customer=customer, code=code)


def _create_link(
    db: Session,
    *,
    referrer: Referrer,
    customer: CustomerIdentity,
    code: str,
) -> AttributionResult:
    referrer_id = referrer.id

    def _write() -> AttributionResult:
        current = get_referrer(db, referrer_id=referrer_id)
        link = AttributionLink(
            customer_email=customer.normalized_email,
            customer_phone=customer.normalized_phone,
            referrer_id=referrer_id,
            referral_code=normalize_code(code),
            attributed_at=utcnow(),
            locked=False,
        )
        db.add(link)
        _bump_count(current, 1)
        db.commit()
        db.refresh(link)
        db.refresh(current)
        return AttributionResult(referrer=current, link=link, created=True, changed=True)

    with referrer_lock(referrer_id):
        try:
            result = run_with_version_retry(db, referrer_id=referrer_id, operation="attribute", fn=_write)
        except IntegrityError:
            # Another delivery attached this customer first; count stays as-is.
            db.rollback()
            link = get_attribution_for_customer(db, customer_email=customer.normalized_email, customer_phone=customer.phone)
            if link is None:
                raise
            return AttributionResult(referrer=get_referrer(db, referrer_id=link.referrer_id), link=link)
    logger.info(
        "attribution.created",
        extra={"referrer_id": referrer_id, "customer_email": customer.normalized_email},
    )
    return result


def _move_link(
    db: Session,
    *,
    link: AttributionLink,
    referrer: Referrer,
    code: str,
) -> AttributionResult:
    previous_id = link.referrer_id
    new_id = referrer.id
    link_id = link.id

    def _write() -> AttributionResult:
        current_link = db.query(AttributionLink).filter(AttributionLink.id == link_id).first()
        if current_link.locked or current_link.referrer_id != previous_id:
            return AttributionResult(referrer=get_referrer(db, referrer_id=current_link.referrer_id), link=current_link)
        previous = get_referrer(db, referrer_id=previous_id)
        current = get_referrer(db, referrer_id=new_id)
        if previous is not None:
            _bump_count(previous, -1)
        _bump_count(current, 1)
        current_link.referrer_id = new_id
        current_link.referral_code = normalize_code(code)
        current_link.attributed_at = utcnow()
        db.commit()
        db.refresh(current_link)
        db.refresh(current)
        return AttributionResult(referrer=current, link=current_link, changed=True)

    with referrer_lock(previous_id, new_id):
        result = run_with_version_retry(db, referrer_id=new_id, operation="reattribute", fn=_write)
    if result.changed:
        logger.info(
            "attribution.moved",
            extra={"referrer_id": new_id, "previous_referrer_id": previous_id, "link_id": link_id},
        )
    return result


def lock_attribution(link: AttributionLink) -> bool:
    """Mark the link final; the caller commits with its own unit of work."""
    if link.locked:
        return False
    link.locked = True
    link.locked_at = utcnow()
    return True


def reassign_customer(
    db: Session,
    *,
    customer: CustomerIdentity,
    referrer_id: int,
    actor: str,
    reason: str | None = None,
) -> AttributionLink:
    """Administrative override: move (or create) the link and lock it."""
    target = get_referrer(db, referrer_id=referrer_id)
    if target is None:
        raise ReferrerNotFound(referrer_id)
    link = get_attribution_for_customer(db, customer_email=customer.normalized_email, customer_phone=customer.phone)
    previous_id = link.referrer_id if link is not None else None

    def _write() -> AttributionLink:
        current_link = get_attribution_for_customer(db, customer_email=customer.normalized_email, customer_phone=customer.phone)
        current = get_referrer(db, referrer_id=referrer_id)
        if current_link is None:
            current_link = AttributionLink(
                customer_email=customer.normalized_email,
                customer_phone=customer.normalized_phone,
                referrer_id=referrer_id,
                referral_code=current.referral_code,
                attributed_at=utcnow(),
            )
            db.add(current_link)
            _bump_count(current, 1)
        elif current_link.referrer_id != referrer_id:
            previous = get_referrer(db, referrer_id=current_link.referrer_id)
            if previous is not None:
                _bump_count(previous, -1)
            _bump_count(current, 1)
            current_link.referrer_id = referrer_id
            current_link.referral_code = current.referral_code
            current_link.attributed_at = utcnow()
        if current_link.customer_email is None:
            current_link.customer_email = customer.normalized_email
        lock_attribution(current_link)
        add_audit_entry(
            db,
            referrer=current,
            action=AuditActionEnum.CUSTOMER_REASSIGNED.value,
            unpaid_before=int(current.unpaid_commission or 0),
            paid_before=int(current.paid_commission or 0),
            actor=actor,
            reason=reason,
            metadata={
                "customer_email": customer.normalized_email,
                "previous_referrer_id": previous_id,
            },
        )
        db.commit()
        db.refresh(current_link)
        return current_link

    with referrer_lock(referrer_id, previous_id):
        link = run_with_version_retry(db, referrer_id=referrer_id, operation="reassign", fn=_write)
    logger.info(
        "attribution.reassigned",
        extra={"referrer_id": referrer_id, "previous_referrer_id": previous_id, "actor": actor},
    )
    return link


def register_customer_for_referrer(
    db: Session,
    *,
    referrer_id: int,
    customer: CustomerIdentity,
    policy: PolicySnapshot,
    actor: str,
) -> AttributionResult:
    """A referrer signs up a customer by phone before any order exists.

    The link starts unlocked and carries the referrer's own code; the
    customer's first finalized order locks it and fills in the email when
    it was not given here.
    """
    phone = customer.normalized_phone
    if not phone or len(phone) not in (10, 11):
        raise InvalidCustomerPhone(customer.phone)
    referrer = get_referrer(db, referrer_id=referrer_id)
    if referrer is None:
        raise ReferrerNotFound(referrer_id)
    if referrer.status != ReferrerStatusEnum.ACTIVE.value:
        raise ReferrerInactive(referrer_id)
    if policy.block_self_referral and is_self_referral(referrer, customer):
        raise SelfReferral()

    existing = get_attribution_by_phone(db, customer_phone=phone) or get_attribution_for_customer(
        db, customer_email=customer.normalized_email
    )
    if existing is not None:
        if existing.referrer_id != referrer_id:
            raise CustomerAlreadyAttributed(existing.referrer_id)
        return AttributionResult(referrer=referrer, link=existing)

    def _write() -> AttributionResult:
        current = get_referrer(db, referrer_id=referrer_id)
        link = AttributionLink(
            customer_email=customer.normalized_email,
            customer_phone=phone,
            referrer_id=referrer_id,
            referral_code=current.referral_code,
            attributed_at=utcnow(),
            locked=False,
        )
        db.add(link)
        _bump_count(current, 1)
        db.flush()
        add_audit_entry(
            db,
            referrer=current,
            action=AuditActionEnum.CUSTOMER_REGISTERED.value,
            unpaid_before=int(current.unpaid_commission or 0),
            paid_before=int(current.paid_commission or 0),
            actor=actor,
            metadata={"customer_phone": phone, "customer_email": customer.normalized_email},
        )
        db.commit()
        db.refresh(link)
        db.refresh(current)
        return AttributionResult(referrer=current, link=link, created=True, changed=True)

    with referrer_lock(referrer_id):
        try:
            result = run_with_version_retry(db, referrer_id=referrer_id, operation="register_customer", fn=_write)
        except IntegrityError:
            db.rollback()
            link = get_attribution_for_customer(db, customer_email=customer.normalized_email, customer_phone=phone)
            if link is None:
                raise
            if link.referrer_id != referrer_id:
                raise CustomerAlreadyAttributed(link.referrer_id)
            return AttributionResult(referrer=get_referrer(db, referrer_id=referrer_id), link=link)
    logger.info(
        "attribution.customer_registered",
        extra={"referrer_id": referrer_id, "customer_phone": phone, "actor": actor},
    )
    return result
