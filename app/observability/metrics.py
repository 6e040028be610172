# app/observability/metrics.py
from fastapi import APIRouter
from starlette.responses import Response

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter(tags=["observability"])

sessions_created_counter = Counter(
    "filament_upload_sessions_created_total",
    "Aantal aangemaakte upload sessies",
    ["kind"],  # mobile|bulk
)

images_uploaded_counter = Counter(
    "filament_images_uploaded_total",
    "Aantal ontvangen foto's",
    ["result"],  # stored|failed
)

extraction_counter = Counter(
    "filament_extractions_total",
    "Aantal vision-extracties",
    ["result"],  # success|error
)

extraction_latency_hist = Histogram(
    "filament_extraction_latency_seconds",
    "Duur van een vision-call",
    buckets=(0.5, 1, 2, 5, 10, 20, 40, 80),
)

worker_runs_counter = Counter(
    "filament_extraction_worker_runs_total",
    "Afgeronde worker runs",
    ["outcome"],  # completed|stopped|crashed
)

reconciled_counter = Counter(
    "filament_pending_uploads_reconciled_total",
    "Pending uploads die via de voorraad als imported zijn herkend",
)


@router.get("/metrics", include_in_schema=True)
def metrics() -> Response:
    # Prometheus expects text/plain; version=0.0.4
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
