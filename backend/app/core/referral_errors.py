from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class ReferralError(Exception):
    code: str
    message: str
    status_code: int = 400

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidCode(ReferralError):
    def __init__(self, code_value: str | None = None):
        super().__init__(
            code="invalid_code",
            message=f"No active referrer owns code {code_value!r}" if code_value else "Referral code is required",
            status_code=404,
        )


class SelfReferral(ReferralError):
    def __init__(self):
        super().__init__(
            code="self_referral",
            message="Customers cannot use their own referral code",
            status_code=409,
        )


class PolicyUnavailable(ReferralError):
    def __init__(self, reason: str):
        super().__init__(
            code="policy_unavailable",
            message=f"Referral program policy unavailable: {reason}",
            status_code=503,
        )


class ReferrerNotFound(ReferralError):
    def __init__(self, referrer_id: int | None = None):
        super().__init__(
            code="referrer_not_found",
            message=f"Referrer {referrer_id} not found" if referrer_id is not None else "Referrer not found",
            status_code=404,
        )


class LedgerEventNotFound(ReferralError):
    def __init__(self, event_id: int):
        super().__init__(
            code="ledger_event_not_found",
            message=f"Ledger event {event_id} not found",
            status_code=404,
        )


class InvalidReversalReason(ReferralError):
    def __init__(self, reason: str | None):
        super().__init__(
            code="invalid_reversal_reason",
            message=f"Unsupported reversal reason {reason!r}",
            status_code=422,
        )


class MemberAlreadyEnrolled(ReferralError):
    def __init__(self, email: str):
        super().__init__(
            code="member_already_enrolled",
            message=f"{email} is already enrolled in the referral program",
            status_code=409,
        )


class InvalidMemberTransition(ReferralError):
    def __init__(self, current: str, target: str):
        super().__init__(
            code="invalid_member_transition",
            message=f"Cannot move member from {current} to {target}",
            status_code=409,
        )


class ConcurrencyConflict(ReferralError):
    def __init__(self, referrer_id: int):
        super().__init__(
            code="concurrency_conflict",
            message=f"Referrer {referrer_id} was modified concurrently; retries exhausted",
            status_code=409,
        )


class ReferrerInactive(ReferralError):
    def __init__(self, referrer_id: int):
        super().__init__(
            code="referrer_inactive",
            message=f"Referrer {referrer_id} is not active",
            status_code=409,
        )


class InvalidCustomerPhone(ReferralError):
    def __init__(self, phone: str | None):
        super().__init__(
            code="invalid_customer_phone",
            message=f"Customer phone {phone!r} must have 10 or 11 digits",
            status_code=422,
        )


class CustomerAlreadyAttributed(ReferralError):
    def __init__(self, referrer_id: int):
        super().__init__(
            code="customer_already_attributed",
            message=f"Customer is already attributed to referrer {referrer_id}",
            status_code=409,
        )


class ProgramDisabled(ReferralError):
    def __init__(self):
        super().__init__(
            code="program_disabled",
            message="The referral program is disabled",
            status_code=409,
        )
