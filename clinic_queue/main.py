"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinic_queue.api.v1.router import api_router
from clinic_queue.config import settings
from clinic_queue.core.exceptions import AppException
from clinic_queue.core.firebase import initialize_firebase
from clinic_queue.core.redis_client import check_redis_connection, close_redis_connection
from clinic_queue.database import check_database_connection, engine
from clinic_queue.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from clinic_queue.middleware.logging import LoggingMiddleware, configure_logging
from clinic_queue.services.change_feed import ChangeFeedListener, PostgresChangeFeed
from clinic_queue.services.worker import JobWorker, get_job_queue

# Configure logging
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Starts the in-process job worker and the change feed, and stops them
    before connections are closed.
    """
    logger.info("application_startup", environment=settings.environment)

    if settings.notification_channel == "fcm":
        try:
            initialize_firebase(settings.firebase_credentials_path, settings.firebase_config_json)
        except Exception as e:
            logger.warning(
                "firebase_initialization_failed",
                error=str(e),
                note="Push deliveries will fail and be retried until Firebase is configured.",
            )

    if await check_database_connection():
        logger.info("database_connected")
    else:
        logger.error("database_connection_failed")

    if settings.lock_backend == "redis":
        if await check_redis_connection():
            logger.info("redis_connected")
        else:
            logger.error("redis_connection_failed")

    job_queue = get_job_queue()

    worker = None
    if settings.run_worker_in_app:
        worker = JobWorker(job_queue)
        worker.start()

    change_feed = None
    if settings.change_feed_enabled:
        change_feed = PostgresChangeFeed(ChangeFeedListener(job_queue))
        try:
            await change_feed.start()
        except Exception as e:
            logger.error("change_feed_start_failed", error=str(e))
            change_feed = None

    yield

    logger.info("application_shutdown")

    if change_feed is not None:
        await change_feed.stop()
    if worker is not None:
        await worker.stop()

    await engine.dispose()
    logger.info("database_connections_closed")

    await close_redis_connection()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Appointment queue orchestration engine for clinic operations",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)

app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, general_exception_handler)  # type: ignore[arg-type]

app.include_router(api_router, prefix=settings.api_v1_prefix)

# Prometheus: HTTP metrics plus the job and notification counters on the default registry
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/docs", "/redoc", "/openapi.json", "/metrics"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "clinic_queue.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
