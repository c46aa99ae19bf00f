from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

REQS = Counter(
    "devotional_push_requests_total",
    "Requests",
    ["method", "path", "status"],
)
LAT = Histogram(
    "devotional_push_latency_seconds",
    "Latency",
    ["method", "path"],
)
DELIVERIES = Counter(
    "devotional_push_deliveries_total",
    "Push deliveries by outcome",
    ["outcome"],
)
PRUNED = Counter(
    "devotional_push_pruned_subscriptions_total",
    "Subscriptions removed after a permanent delivery failure",
)


def router() -> APIRouter:
    r = APIRouter()

    @r.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return r
