"""Doctor queue endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from clinic_queue.dependencies import Appointments, Jobs, Queues
from clinic_queue.schemas.jobs import JobAccepted
from clinic_queue.schemas.queue import DoctorDelayRequest, DoctorDelayResult, QueueSnapshot
from clinic_queue.services.worker import recalculate_now

router = APIRouter(prefix="/queue", tags=["Queue"])


@router.get(
    "/doctors/{doctor_id}/days/{service_day}",
    response_model=QueueSnapshot,
    summary="Get doctor's queue",
)
async def get_queue(doctor_id: UUID, service_day: date, service: Queues) -> QueueSnapshot:
    """
    Current ordering and estimated start times for a doctor's day.

    Reflects the last completed recalculation.
    """
    return await service.get_queue(doctor_id, service_day)


@router.post(
    "/doctors/{doctor_id}/days/{service_day}/recalculate",
    response_model=JobAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request queue recalculation",
)
async def request_recalculation(
    doctor_id: UUID,
    service_day: date,
    job_queue: Jobs,
    priority: int = Query(1, ge=1, le=10),
) -> JobAccepted:
    """Enqueue a recalculation; the response only confirms the job was accepted."""
    job_id = await recalculate_now(job_queue, doctor_id, service_day, priority=priority)
    return JobAccepted(job_id=job_id)


@router.post(
    "/doctors/{doctor_id}/days/{service_day}/delay",
    response_model=DoctorDelayResult,
    summary="Report doctor delay",
)
async def add_doctor_delay(
    doctor_id: UUID,
    service_day: date,
    data: DoctorDelayRequest,
    service: Appointments,
) -> DoctorDelayResult:
    """
    Push every waiting appointment of the day back by ``delay_minutes``.

    Estimated start times follow once the recalculation job has run.
    """
    return await service.add_doctor_delay(doctor_id, service_day, data)
