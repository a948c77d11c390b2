from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
MESSAGES_TOTAL = Counter(
    "dispatch_messages_total",
    "Send outcomes per item attempt",
    ["result"] # success|retriable|rate_limited|failed
)

RATE_LIMITED_TOTAL = Counter(
    "dispatch_rate_limited_total",
    "Total sends rejected by the provider's rate limit"
)

JOBS_ACTIVE = Gauge(
    "dispatch_jobs_active",
    "Number of dispatch jobs currently running or paused"
)

SEND_DELAY = Histogram(
    "dispatch_send_delay_seconds",
    "Backoff delay applied before a send",
    buckets=[0.0, 0.5, 1.5, 3.0, 6.0, 12.0, 30.0, 60.0]
)

STATUS_SYNC_TOTAL = Counter(
    "dispatch_status_sync_total",
    "Status reports sent to the system of record",
    ["kind", "result"] # periodic|final, success|failure
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
