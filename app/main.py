from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException

from app.api.errors import register_api_exception_handlers
from app.api.media import router as media_router
from app.api.router import router as api_router
from app.db.session import check_database
from app.db.session import close_engine
from app.http.middleware import RequestLoggingMiddleware, parse_skip_paths
from app.logging_config import configure_logging, parse_redact_fields
from app.services.scheduler import SchedulerService, parse_feed_ids
from app.settings import settings

logger = logging.getLogger(__name__)

configure_logging(
    level=settings.log_level,
    log_format=settings.log_format,
    redact_fields=parse_redact_fields(settings.log_redact_fields),
    include_uvicorn_access=settings.log_uvicorn_access,
)

scheduler_service = SchedulerService(
    enabled=settings.scheduler_enabled,
    tick_seconds=settings.scheduler_tick_seconds,
    state_ids=parse_feed_ids(settings.scheduler_feeds),
    art_jobs_enabled=settings.scheduler_art_jobs_enabled,
    art_jobs_batch_size=settings.art_jobs_batch_size,
    art_jobs_max_attempts=settings.art_jobs_max_attempts,
)


def _log_startup_build_marker() -> None:
    logger.info(
        "app.startup_build_marker",
        extra={
            "event": "app.startup_build_marker",
            "build_marker": settings.sync_build_stamp,
            "scheduler_enabled": settings.scheduler_enabled,
            "admin_secret_configured": bool(settings.admin_secret),
            "cron_token_configured": bool(settings.cron_token),
            "log_format": settings.log_format,
        },
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    _log_startup_build_marker()
    await scheduler_service.start()
    yield
    await scheduler_service.stop()
    await close_engine()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
register_api_exception_handlers(app)
app.add_middleware(
    RequestLoggingMiddleware,
    log_requests=settings.log_requests,
    skip_paths=parse_skip_paths(settings.log_request_skip_paths),
)
app.include_router(api_router)
app.include_router(media_router)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    if await check_database():
        return {"status": "ok"}
    raise HTTPException(status_code=500, detail="database unavailable")
