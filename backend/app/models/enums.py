from enum import Enum

# Stored as strings (native enums disabled for easier evolution).


class ReferrerStatusEnum(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    # Alert state only; the account keeps earning until an admin acts.
    FRAUD_SUSPECT = "fraud_suspect"


ATTRIBUTABLE_STATUSES = {ReferrerStatusEnum.ACTIVE.value, ReferrerStatusEnum.FRAUD_SUSPECT.value}


class LedgerEventKindEnum(str, Enum):
    EARNED = "earned"
    REVERSED = "reversed"


class LedgerEventStatusEnum(str, Enum):
    CALCULATED = "calculated"
    PAID = "paid"


class ReversalReasonEnum(str, Enum):
    ORDER_RETURNED = "order_returned"
    ORDER_CANCELLED = "order_cancelled"
    FRAUD_DETECTED = "fraud_detected"


class NotificationKindEnum(str, Enum):
    COMMISSION_EARNED = "commission_earned"
    COMMISSION_REVERSED = "commission_reversed"
    TIER_PROGRESS = "tier_progress"
    FRAUD_ALERT = "fraud_alert"


class NotificationStatusEnum(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class PendingReversalStatusEnum(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    EXPIRED = "expired"


class ClawbackModeEnum(str, Enum):
    FLAG_FOR_REVIEW = "flag_for_review"
    AUTO_CLAWBACK = "auto_clawback"


class PayoutCycleEnum(str, Enum):
    MONTHLY = "monthly"
    WEEKLY = "weekly"


class AuditActionEnum(str, Enum):
    COMMISSION_EARNED = "commission_earned"
    COMMISSION_REVERSED = "commission_reversed"
    PAYOUT_SETTLED = "payout_settled"
    MEMBER_ENROLLED = "member_enrolled"
    MEMBER_APPROVED = "member_approved"
    MEMBER_SUSPENDED = "member_suspended"
    MEMBER_REACTIVATED = "member_reactivated"
    CUSTOM_RATE_SET = "custom_rate_set"
    CUSTOM_RATE_DISABLED = "custom_rate_disabled"
    CUSTOMER_REASSIGNED = "customer_reassigned"
    FRAUD_FLAGGED = "fraud_flagged"
    FRAUD_MARKED = "fraud_marked"
    CUSTOMER_REGISTERED = "customer_registered"
