# app/observability/metrics.py
from fastapi import APIRouter
from starlette.responses import Response

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter(tags=["observability"])

chunk_counter = Counter(
    "media_intake_chunks_total",
    "Ontvangen chunks",
    ["result"],  # accepted|duplicate|rejected
)

sessions_evicted_counter = Counter(
    "media_intake_sessions_evicted_total",
    "Sessies verwijderd na idle-timeout",
)

active_sessions_gauge = Gauge(
    "media_intake_active_sessions",
    "Openstaande chunk-sessies",
)

strategy_counter = Counter(
    "media_intake_strategy_attempts_total",
    "Verwerkingspogingen per strategie",
    ["strategy", "result"],  # success|error
)

storage_write_counter = Counter(
    "media_intake_storage_writes_total",
    "Schrijfacties naar object storage",
    ["result"],  # success|retry|error
)

verify_counter = Counter(
    "media_intake_verify_total",
    "Post-write verificaties",
    ["result"],  # success|retry|error
)

upload_counter = Counter(
    "media_intake_uploads_total",
    "Afgeronde uploads",
    ["kind", "result"],  # kind: chunked|single|bulk
)

upload_size_hist = Histogram(
    "media_intake_upload_size_bytes",
    "Bestandsgroottes van uploads (na assemblage)",
    buckets=(1e5, 3e5, 1e6, 3e6, 1e7, 3e7, 1e8, 2e8),
)

latency_hist = Histogram(
    "media_intake_api_latency_seconds",
    "API latency per route",
    ["route"],
)


@router.get("/metrics", include_in_schema=True)
def metrics() -> Response:
    # Prometheus expects text/plain; version=0.0.4
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
