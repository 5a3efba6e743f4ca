"""Job queue operator endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query

from clinic_queue.dependencies import Jobs
from clinic_queue.schemas.jobs import (
    DispatchResult,
    JobListResponse,
    JobResponse,
    JobStats,
    JobStatus,
    JobType,
)

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get("/", response_model=JobListResponse, summary="List jobs")
async def list_jobs(
    job_queue: Jobs,
    status_filter: JobStatus | None = Query(None, alias="status"),
    job_type: JobType | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
) -> JobListResponse:
    return await job_queue.list_jobs(status_filter, job_type, page, page_size)


@router.get("/stats", response_model=JobStats, summary="Job counts")
async def job_stats(job_queue: Jobs) -> JobStats:
    return await job_queue.job_stats()


@router.post("/dispatch", response_model=DispatchResult, summary="Run one dispatch cycle")
async def dispatch(job_queue: Jobs) -> DispatchResult:
    """
    Run a dispatch cycle inline.

    Meant for deployments without a background worker and for operators
    draining the queue by hand.
    """
    return await job_queue.dispatch_cycle()


@router.get("/{job_id}", response_model=JobResponse, summary="Get job")
async def get_job(job_id: UUID, job_queue: Jobs) -> JobResponse:
    return await job_queue.get_job(job_id)


@router.post("/{job_id}/cancel", response_model=JobResponse, summary="Cancel pending job")
async def cancel_job(job_id: UUID, job_queue: Jobs) -> JobResponse:
    """
    Cancel a job that has not started.

    Running jobs cannot be cancelled and answer 409; they always end
    completed or failed.
    """
    return await job_queue.cancel_job(job_id)
