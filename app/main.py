# app/main.py
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.core.settings import settings
from app.core.logging_config import setup_logging, logger
from app.core.errors import ServiceError, service_error_handler
from app.core.rate_limit import limiter
from app.db import Base, engine
from app import models  # noqa: F401  (registreert SQLAlchemy modellen)
from app.jobs.extraction import WorkerRegistry

from app.routers import ai_settings, pending_uploads, upload_sessions
from app.observability.metrics import router as metrics_router


# ----------------------------------------------------
# App init
# ----------------------------------------------------
app = FastAPI(title="Filament Photo Intake", version="0.1.0")

setup_logging()
logger.info("startup", service="filament-intake-api")

# lopende extractie-workers, per sessie
app.state.workers = WorkerRegistry()


# ----------------------------------------------------
# Health
# ----------------------------------------------------
@app.get("/health", include_in_schema=True)
def health() -> dict:
    return {"status": "ok", "workers": len(app.state.workers)}


# ----------------------------------------------------
# Logging middleware
# ----------------------------------------------------
@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    start = time.time()

    request_id = request.headers.get("X-Request-ID", "unknown")
    client_ip = request.client.host if request.client else "unknown"

    bound_logger = logger.bind(
        request_id=request_id,
        ip=client_ip,
        endpoint=str(request.url.path),
        method=request.method,
    )

    bound_logger.info("request_started")
    response = await call_next(request)
    latency_ms = round((time.time() - start) * 1000, 2)

    bound_logger.bind(status_code=response.status_code, latency_ms=latency_ms).info(
        "request_finished"
    )
    return response


# ----------------------------------------------------
# Middleware
# ----------------------------------------------------
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RateLimitExceeded)
def ratelimit_handler(request: Request, exc: RateLimitExceeded):
    return PlainTextResponse(str(exc), status_code=429)


app.add_exception_handler(ServiceError, service_error_handler)


# ----------------------------------------------------
# Routers
# ----------------------------------------------------
app.include_router(upload_sessions.router)
app.include_router(pending_uploads.router)
app.include_router(ai_settings.router)
app.include_router(metrics_router)  # /metrics


# ----------------------------------------------------
# Startup / shutdown
# ----------------------------------------------------
@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)


@app.on_event("shutdown")
async def on_shutdown():
    # sessies blijven op processing staan; een volgende start neemt ze over
    # zodra de heartbeat verlopen is
    await app.state.workers.shutdown()
