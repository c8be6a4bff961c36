# Centralized Prometheus metrics. The middleware records timing and
# counts for every request; the engine records ledger activity so
# dashboards can track commissions, reversals and fraud flags.

from time import monotonic

from fastapi import Request
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

# Generic API latency + request counters, labelled by method and route.
REQUEST_DURATION_MS = Histogram(
    "request_duration_ms",
    "API request duration in milliseconds",
    ["method", "route"],
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2000, 5000, 10000],
)
REQUESTS_TOTAL = Counter(
    "requests_total",
    "Total API requests",
    ["method", "route", "status_code"],
)

# Ledger activity. Outcomes cover both writes and soft no-ops so that
# duplicate deliveries are visible on dashboards.
COMMISSION_OUTCOMES_TOTAL = Counter(
    "referral_commission_outcomes_total",
    "Order finalization outcomes",
    ["outcome"],
)
COMMISSION_AMOUNT_MINOR = Histogram(
    "referral_commission_amount_minor",
    "Commission amounts in minor currency units",
    ["tier"],
    buckets=[0, 1000, 10000, 50000, 100000, 500000, 1000000, 5000000],
)
REVERSAL_OUTCOMES_TOTAL = Counter(
    "referral_reversal_outcomes_total",
    "Reversal outcomes",
    ["outcome", "reason"],
)
LEDGER_CONFLICTS_TOTAL = Counter(
    "referral_ledger_conflicts_total",
    "Optimistic-concurrency conflicts retried by the ledger writer",
    ["operation"],
)
FRAUD_FLAGS_TOTAL = Counter(
    "referral_fraud_flags_total",
    "Referrers moved to fraud_suspect",
)
RECONCILIATION_MISMATCH_TOTAL = Counter(
    "referral_reconciliation_mismatch_total",
    "Referrers whose balances do not reconcile with the ledger",
)

NOTIFICATIONS_REQUESTED_TOTAL = Counter(
    "referral_notifications_requested_total",
    "Notification requests written to the outbox",
    ["kind"],
)
NOTIFICATIONS_SENT_TOTAL = Counter(
    "notifications_sent_total",
    "Notifications sent successfully",
    ["channel_type", "trigger_type"],
)
NOTIFICATIONS_FAILED_TOTAL = Counter(
    "notifications_failed_total",
    "Notifications that failed to send",
    ["channel_type", "trigger_type"],
)

JOB_RUN_TOTAL = Counter(
    "job_run_total",
    "Background job runs",
    ["job_name", "status"],
)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = monotonic()
        response = await call_next(request)
        duration_ms = (monotonic() - start) * 1000.0

        route = request.scope.get("route")
        route_path = getattr(route, "path", None) or request.url.path
        REQUEST_DURATION_MS.labels(request.method, route_path).observe(duration_ms)
        REQUESTS_TOTAL.labels(request.method, route_path, str(response.status_code)).inc()
        return response


def _label(value: object | None, default: str = "unknown") -> str:
    if value is None:
        return default
    if isinstance(value, str) and not value.strip():
        return default
    return str(value)


def record_commission_outcome(outcome: str, *, amount: int | None = None, tier: str | None = None) -> None:
    COMMISSION_OUTCOMES_TOTAL.labels(outcome=_label(outcome)).inc()
    if amount is not None:
        COMMISSION_AMOUNT_MINOR.labels(tier=_label(tier)).observe(amount)


def record_reversal_outcome(outcome: str, reason: str | None) -> None:
    REVERSAL_OUTCOMES_TOTAL.labels(outcome=_label(outcome), reason=_label(reason)).inc()


def record_ledger_conflict(operation: str) -> None:
    LEDGER_CONFLICTS_TOTAL.labels(operation=_label(operation)).inc()


def record_fraud_flag() -> None:
    FRAUD_FLAGS_TOTAL.inc()


def record_reconciliation_mismatch(count: int = 1) -> None:
    RECONCILIATION_MISMATCH_TOTAL.inc(count)


def record_notification_requested(kind: str) -> None:
    NOTIFICATIONS_REQUESTED_TOTAL.labels(kind=_label(kind)).inc()


def record_notification_delivery(
    *,
    channel_type: str | None,
    trigger_type: str | None,
    success: bool,
) -> None:
    labels = {
        "channel_type": _label(channel_type),
        "trigger_type": _label(trigger_type),
    }
    if success:
        NOTIFICATIONS_SENT_TOTAL.labels(**labels).inc()
    else:
        NOTIFICATIONS_FAILED_TOTAL.labels(**labels).inc()


def record_job_run(*, job_name: str, success: bool) -> None:
    JOB_RUN_TOTAL.labels(
        job_name=_label(job_name),
        status="success" if success else "failure",
    ).inc()
