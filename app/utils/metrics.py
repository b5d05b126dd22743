"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
orders_total = Counter(
    "orders_total",
    "Order lifecycle events",
    ["event"],  # initiated, paid, failed, expired, amount_mismatch
)

ledger_operations_total = Counter(
    "ledger_operations_total",
    "Credit ledger operations",
    ["operation", "result"],  # consume/grant x applied/replayed/rejected
)

handoff_redemptions_total = Counter(
    "handoff_redemptions_total",
    "Session handoff redemption attempts",
    ["outcome"],  # ok, not_found, expired, undecryptable
)

payment_gateway_requests_total = Counter(
    "payment_gateway_requests_total",
    "Payment gateway API requests",
    ["method", "status"],
)

sweep_orders_total = Counter(
    "sweep_orders_total",
    "Orders resolved by the expiry sweep",
    ["outcome"],  # expired, paid, failed, skipped
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
payment_gateway_request_duration_seconds = Histogram(
    "payment_gateway_request_duration_seconds",
    "Payment gateway API request duration",
    ["method"],
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10],
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
