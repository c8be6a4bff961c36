from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.core.time import normalize_dt, utcnow


@dataclass(frozen=True)
class OrderFinalized:
    """A finalized order as delivered by the checkout flow.

    Only the fields the commission engine needs; the order itself is owned
    upstream. ``order_amount`` is in integer minor units.
    """

    order_id: str
    customer_email: str
    order_amount: int
    finalized_at: datetime | None = None
    customer_phone: str | None = None
    referral_code: str | None = None
    shipping_address: str | None = None
    payment_method: str | None = None

    def __post_init__(self) -> None:
        if not self.order_id:
            raise ValueError("order_id is required")
        if int(self.order_amount) < 0:
            raise ValueError("order_amount must be non-negative")
        object.__setattr__(self, "order_amount", int(self.order_amount))
        object.__setattr__(self, "finalized_at", normalize_dt(self.finalized_at) or utcnow())
