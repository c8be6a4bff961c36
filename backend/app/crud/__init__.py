from .referrers import (
    create_referrer,
    get_referrer,
    get_referrer_by_code,
    get_referrer_by_email,
    list_referrers,
    get_attribution_for_customer,
    list_attributions_for_referrer,
)
from .ledger import (
    get_event,
    get_marker,
    get_reversal_for_event,
    list_events_for_referrer,
    list_audit_entries,
    sum_live_earned_amounts,
)
from .policy import get_policy_row, upsert_policy, seed_default_policy
from .notifications import (
    create_notification,
    has_notification_for_period,
    list_notifications_for_referrer,
)
