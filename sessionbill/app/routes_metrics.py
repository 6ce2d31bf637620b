# routes_metrics.py

"""Prometheus metrics and /metrics endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

# Counters
payment_requests_total = Counter(
    "payment_requests_total", "Total payment requests raised by customers"
)
payment_requests_total.inc(0)

billing_transitions_total = Counter(
    "billing_transitions_total", "Billing status writes applied", ["status"]
)

bills_closed_total = Counter("bills_closed_total", "Total sessions settled and closed")
bills_closed_total.inc(0)

cas_conflicts_total = Counter(
    "cas_conflicts_total", "Compare-and-set conflicts on session rows"
)
cas_conflicts_total.inc(0)

notifications_dropped_total = Counter(
    "notifications_dropped_total",
    "Payment notifications not delivered to a subscriber",
)
notifications_dropped_total.inc(0)

http_errors_total = Counter(
    "http_errors_total", "Total HTTP errors", ["status", "code"]
)
http_errors_total.labels(status="0", code="").inc(0)

# Gauges
payment_ws_clients = Gauge(
    "payment_ws_clients", "Connected staff clients on the payments channel"
)

router = APIRouter()


@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics."""

    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
