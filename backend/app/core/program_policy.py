"""Program policy store.

The policy row is read once per invocation into an immutable
``PolicySnapshot`` so every component in a call sees the same tier
table and knobs, even if an administrator edits the row mid-flight.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.referral_errors import PolicyUnavailable
from app.crud.policy import DEFAULT_FRAUD_RULES, get_policy_row, seed_default_policy
from app.models.enums import ClawbackModeEnum, PayoutCycleEnum
from app.models.policy import ReferralProgramPolicy


@dataclass(frozen=True)
class TierBand:
    min_amount: int
    max_amount: int | None
    rate: Decimal
    label: str

    def contains(self, revenue: int) -> bool:
        if revenue < self.min_amount:
            return False
        return self.max_amount is None or revenue < self.max_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "min": self.min_amount,
            "max": self.max_amount,
            "rate": float(self.rate),
            "label": self.label,
        }


@dataclass(frozen=True)
class FraudRule:
    threshold: float
    weight: int
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicySnapshot:
    tiers: tuple[TierBand, ...]
    is_enabled: bool = True
    block_self_referral: bool = True
    allow_code_change_before_first_order: bool = False
    referral_validity_days: int = 0
    require_admin_approval: bool = True
    tier_progress_threshold: float = 0.8
    fraud_rules: Mapping[str, FraudRule] = field(default_factory=dict)
    fraud_score_threshold: int = 50
    evaluate_fraud_on_write: bool = False
    reversal_clawback_mode: str = ClawbackModeEnum.FLAG_FOR_REVIEW.value
    payout_cycle: str = PayoutCycleEnum.MONTHLY.value
    payout_day: int = 1
    min_payout_amount: int = 0
    version: int = 1


def _coerce_int(value, *, field_name: str, allow_none: bool = False) -> int | None:
    if value is None:
        if allow_none:
            return None
        raise PolicyUnavailable(f"tier {field_name} is required")
    if isinstance(value, bool):
        raise PolicyUnavailable(f"tier {field_name} must be numeric")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise PolicyUnavailable(f"tier {field_name} must be numeric") from None


def parse_tier_table(raw: Any) -> tuple[TierBand, ...]:
    if not isinstance(raw, list) or not raw:
        raise PolicyUnavailable("tier table is empty")
    bands = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise PolicyUnavailable(f"tier {index} is malformed")
        try:
            rate = Decimal(str(entry.get("rate")))
        except (InvalidOperation, ValueError):
            raise PolicyUnavailable(f"tier {index} rate is invalid") from None
        bands.append(
            TierBand(
                min_amount=_coerce_int(entry.get("min"), field_name="min"),
                max_amount=_coerce_int(entry.get("max"), field_name="max", allow_none=True),
                rate=rate,
                label=str(entry.get("label") or f"tier_{index + 1}"),
            )
        )
    return validate_tier_table(bands)


def validate_tier_table(bands) -> tuple[TierBand, ...]:
    """Bands must cover ``[0, inf)`` without gaps or overlaps."""
    ordered = sorted(bands, key=lambda band: band.min_amount)
    if not ordered:
        raise PolicyUnavailable("tier table is empty")
    if ordered[0].min_amount != 0:
        raise PolicyUnavailable("first tier must start at 0")
    for index, band in enumerate(ordered):
        if band.rate < 0 or band.rate > 100:
            raise PolicyUnavailable(f"tier {band.label!r} rate must be between 0 and 100")
        is_last = index == len(ordered) - 1
        if band.max_amount is None:
            if not is_last:
                raise PolicyUnavailable(f"only the last tier may be open-ended ({band.label!r})")
            continue
        if band.max_amount <= band.min_amount:
            raise PolicyUnavailable(f"tier {band.label!r} is empty")
        if is_last:
            raise PolicyUnavailable("last tier must be open-ended")
        if ordered[index + 1].min_amount != band.max_amount:
            raise PolicyUnavailable(f"tiers overlap or leave a gap after {band.label!r}")
    return tuple(ordered)


def parse_fraud_rules(raw: Any) -> Mapping[str, FraudRule]:
    merged: dict[str, dict] = {key: dict(value) for key, value in DEFAULT_FRAUD_RULES.items()}
    if isinstance(raw, dict):
        for key, value in raw.items():
            if isinstance(value, dict):
                merged.setdefault(key, {}).update(value)
    rules = {}
    for key, value in merged.items():
        options = {k: v for k, v in value.items() if k not in {"threshold", "weight"}}
        try:
            rules[key] = FraudRule(
                threshold=float(value.get("threshold", 0)),
                weight=int(value.get("weight", 0)),
                options=MappingProxyType(options),
            )
        except (TypeError, ValueError):
            raise PolicyUnavailable(f"fraud rule {key!r} is malformed") from None
    return MappingProxyType(rules)


def snapshot_from_row(row: ReferralProgramPolicy) -> PolicySnapshot:
    clawback_mode = row.reversal_clawback_mode or ClawbackModeEnum.FLAG_FOR_REVIEW.value
    if clawback_mode not in {mode.value for mode in ClawbackModeEnum}:
        raise PolicyUnavailable(f"unknown clawback mode {clawback_mode!r}")
    payout_cycle = row.payout_cycle or PayoutCycleEnum.MONTHLY.value
    if payout_cycle not in {cycle.value for cycle in PayoutCycleEnum}:
        raise PolicyUnavailable(f"unknown payout cycle {payout_cycle!r}")
    threshold = float(row.tier_progress_threshold if row.tier_progress_threshold is not None else 0.8)
    if not 0 < threshold <= 1:
        raise PolicyUnavailable("tier progress threshold must be in (0, 1]")
    return PolicySnapshot(
        tiers=parse_tier_table(row.tiers_json),
        is_enabled=bool(row.is_enabled),
        block_self_referral=bool(row.block_self_referral),
        allow_code_change_before_first_order=bool(row.allow_code_change_before_first_order),
        referral_validity_days=max(int(row.referral_validity_days or 0), 0),
        require_admin_approval=bool(row.require_admin_approval),
        tier_progress_threshold=threshold,
        fraud_rules=parse_fraud_rules(row.fraud_rules_json),
        fraud_score_threshold=int(row.fraud_score_threshold or 0),
        evaluate_fraud_on_write=bool(row.evaluate_fraud_on_write),
        reversal_clawback_mode=clawback_mode,
        payout_cycle=payout_cycle,
        payout_day=int(row.payout_day or 1),
        min_payout_amount=int(row.min_payout_amount or 0),
        version=int(row.version or 1),
    )


def load_policy_snapshot(db: Session) -> PolicySnapshot:
    try:
        row = get_policy_row(db)
    except SQLAlchemyError as exc:
        raise PolicyUnavailable("policy store unreachable") from exc
    if row is None:
        if not settings.REFERRAL_POLICY_AUTOSEED:
            raise PolicyUnavailable("no policy configured")
        row = seed_default_policy(db)
    return snapshot_from_row(row)


def find_band(revenue: int, tiers: tuple[TierBand, ...]) -> TierBand:
    for band in tiers:
        if band.contains(revenue):
            return band
    # Only reachable for negative revenue; validated tables cover [0, inf).
    return tiers[0]


def next_band(band: TierBand, tiers: tuple[TierBand, ...]) -> TierBand | None:
    for index, candidate in enumerate(tiers):
        if candidate == band:
            return tiers[index + 1] if index + 1 < len(tiers) else None
    return None
