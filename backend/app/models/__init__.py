from .referrers import Referrer, AttributionLink
from .ledger import (
    CommissionLedgerEvent,
    CommissionAuditEntry,
    OrderCommissionMarker,
    PendingReversal,
    PayoutBatch,
)
from .policy import ReferralProgramPolicy
from .notifications import ReferrerNotification
