"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
reconcile_outcomes_total = Counter(
    "reconcile_outcomes_total",
    "Reconciliation outcomes per trigger",
    ["trigger", "outcome"],
)

credentials_issued_total = Counter(
    "credentials_issued_total",
    "Invite links created",
    ["kind"],  # initial / reissue
)

credential_issue_retries_total = Counter(
    "credential_issue_retries_total",
    "Invite link creation retries after rate limiting",
)

memberships_total = Counter(
    "memberships_total",
    "Channel membership changes handled by the watcher",
    ["change"],
)

webhooks_rejected_total = Counter(
    "webhooks_rejected_total",
    "Gateway notifications rejected by authenticity check",
)

telegram_requests_total = Counter(
    "telegram_requests_total",
    "Total Telegram API requests",
    ["method", "status"],
)

gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["method", "status"],
)

# Histograms
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway request duration",
    ["method"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 15],
)

reconcile_duration_seconds = Histogram(
    "reconcile_duration_seconds",
    "End-to-end reconcile duration",
    ["trigger"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
