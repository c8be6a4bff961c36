from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.core.program_policy import TierBand, find_band


@dataclass(frozen=True)
class CommissionQuote:
    tier: TierBand
    rate: Decimal
    amount: int
    new_month_to_date: int


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_commission(
    order_amount: int,
    month_to_date_before: int,
    tiers: tuple[TierBand, ...],
    rate_override: Decimal | None = None,
) -> CommissionQuote:
    """Charge the whole order at the rate of the band holding the post-order total.

    Amounts are integer minor units. The band is picked by the cumulative
    monthly revenue *after* this order, and the full order is charged at
    that single rate; nothing is split across bands. ``rate_override`` is
    a member's custom rate and replaces the band rate but not its label.
    """
    order_amount = int(order_amount)
    new_month_to_date = int(month_to_date_before) + order_amount
    band = find_band(new_month_to_date, tiers)
    rate = Decimal(str(rate_override)) if rate_override is not None else band.rate
    amount = round_half_up(Decimal(order_amount) * rate / Decimal(100))
    return CommissionQuote(
        tier=band,
        rate=rate,
        amount=amount,
        new_month_to_date=new_month_to_date,
    )
