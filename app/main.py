import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from app.core.logging import bind_request_id, configure_logging, get_logger
from app.routers import admin, credits, publications, videos
from app.services.job_status import JobStatusRegistry
from app.services.notifications import LiveNotificationHub
from app.services.video_jobs import VideoJobService
from app.services.webhooks import WebhookDispatcher
from app.storage.base import get_ledger_store

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Points Ledger API",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(videos.router, prefix="/v1/videos", tags=["videos"])
app.include_router(publications.router, prefix="/v1/videos/publish", tags=["publications"])
app.include_router(credits.router, prefix="/v1/points", tags=["points"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    store = await get_ledger_store()
    app.state.store = store
    app.state.job_status = JobStatusRegistry(max_entries=settings.job_status_max_entries)
    app.state.hub = LiveNotificationHub(
        queue_size=settings.live_stream_queue_size,
        keepalive_seconds=settings.live_stream_keepalive_seconds,
    )
    app.state.video_jobs = VideoJobService(
        store,
        app.state.job_status,
        app.state.hub,
        dispatcher=WebhookDispatcher(settings.webhook_timeout_seconds),
        settings=settings,
    )
    log.info("startup", msg="Ledger store ready", backend=settings.ledger_backend)


@app.on_event("shutdown")
async def shutdown():
    app.state.hub.close_all()
    await app.state.store.close()
    log.info("shutdown", msg="Live streams closed")


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
