"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel

from clinic_queue.config import settings
from clinic_queue.core.redis_client import check_redis_connection
from clinic_queue.database import check_database_connection
from clinic_queue.dependencies import Jobs

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Detailed health check response model."""

    database: str
    lock_backend: str
    redis: str
    pending_jobs: int | None = None
    failed_jobs: int | None = None


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Detailed health check",
)
async def detailed_health_check(job_queue: Jobs) -> DetailedHealthResponse:
    """
    Detailed health check with store, lock backend and job backlog.

    Redis is only checked when it backs the queue locks.
    """
    db_healthy = await check_database_connection()

    redis_state = "not_configured"
    redis_healthy = True
    if settings.lock_backend == "redis":
        redis_healthy = await check_redis_connection()
        redis_state = "healthy" if redis_healthy else "unhealthy"

    pending = failed = None
    if db_healthy:
        stats = await job_queue.job_stats()
        pending = stats.by_status.get("pending", 0)
        failed = stats.by_status.get("failed", 0)

    return DetailedHealthResponse(
        status="healthy" if db_healthy and redis_healthy else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        lock_backend=settings.lock_backend,
        redis=redis_state,
        pending_jobs=pending,
        failed_jobs=failed,
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    return {"message": "pong"}
