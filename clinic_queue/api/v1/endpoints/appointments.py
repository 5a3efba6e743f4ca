"""Appointment lifecycle endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query, status

from clinic_queue.dependencies import Appointments
from clinic_queue.schemas.appointments import (
    AppointmentCreate,
    AppointmentEventResponse,
    AppointmentResponse,
    CancelRequest,
    ConflictResponse,
    EmergencyAppointmentCreate,
    NoShowSweepResult,
    RescheduleRequest,
    RescheduleResponse,
)

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Schedule appointment",
)
async def schedule_appointment(
    data: AppointmentCreate,
    service: Appointments,
) -> AppointmentResponse:
    """
    Schedule a new appointment.

    The queue position is filled in asynchronously by a recalculation job.
    """
    return await service.schedule_appointment(data)


@router.post(
    "/emergency",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Insert emergency appointment",
)
async def insert_emergency_appointment(
    data: EmergencyAppointmentCreate,
    service: Appointments,
) -> AppointmentResponse:
    """
    Insert an emergency appointment ahead of every waiting patient.

    Waiting patients are pushed back by the recalculation job.
    """
    return await service.insert_emergency_appointment(data)


@router.post(
    "/no-shows/sweep",
    response_model=NoShowSweepResult,
    summary="Mark overdue appointments as no-shows",
)
async def sweep_no_shows(
    service: Appointments,
    grace_minutes: int | None = Query(None, ge=1, le=24 * 60),
) -> NoShowSweepResult:
    """Mark scheduled appointments whose patient is late past the grace period."""
    return await service.mark_overdue_no_shows(grace_minutes=grace_minutes)


@router.get(
    "/conflicts",
    response_model=ConflictResponse,
    summary="Check scheduling conflicts",
)
async def check_conflicts(
    service: Appointments,
    doctor_id: UUID = Query(...),
    scheduled_at: datetime = Query(...),
    duration_minutes: int | None = Query(None, gt=0, le=24 * 60),
    exclude_id: UUID | None = Query(None),
) -> ConflictResponse:
    """Find active appointments of a doctor overlapping a proposed slot."""
    return await service.check_conflicts(doctor_id, scheduled_at, duration_minutes, exclude_id)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    summary="Get appointment",
)
async def get_appointment(appointment_id: UUID, service: Appointments) -> AppointmentResponse:
    return await service.get_appointment(appointment_id)


@router.get(
    "/{appointment_id}/events",
    response_model=list[AppointmentEventResponse],
    summary="Get appointment history",
)
async def list_events(
    appointment_id: UUID,
    service: Appointments,
) -> list[AppointmentEventResponse]:
    """Lifecycle events of an appointment, oldest first."""
    return await service.list_events(appointment_id)


@router.post(
    "/{appointment_id}/check-in",
    response_model=AppointmentResponse,
    summary="Check patient in",
)
async def check_in(appointment_id: UUID, service: Appointments) -> AppointmentResponse:
    return await service.check_in(appointment_id)


@router.post(
    "/{appointment_id}/start",
    response_model=AppointmentResponse,
    summary="Start consultation",
)
async def start(appointment_id: UUID, service: Appointments) -> AppointmentResponse:
    return await service.start(appointment_id)


@router.post(
    "/{appointment_id}/complete",
    response_model=AppointmentResponse,
    summary="Complete consultation",
)
async def complete(appointment_id: UUID, service: Appointments) -> AppointmentResponse:
    return await service.complete(appointment_id)


@router.post(
    "/{appointment_id}/no-show",
    response_model=AppointmentResponse,
    summary="Mark as no-show",
)
async def mark_no_show(appointment_id: UUID, service: Appointments) -> AppointmentResponse:
    return await service.mark_no_show(appointment_id)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    summary="Cancel appointment",
)
async def cancel(
    appointment_id: UUID,
    service: Appointments,
    data: CancelRequest | None = None,
) -> AppointmentResponse:
    """
    Cancel an appointment.

    The patient is only notified when ``notify_patient`` is set.
    """
    return await service.cancel(appointment_id, data or CancelRequest())


@router.post(
    "/{appointment_id}/reschedule",
    response_model=RescheduleResponse,
    summary="Reschedule appointment",
)
async def reschedule(
    appointment_id: UUID,
    data: RescheduleRequest,
    service: Appointments,
) -> RescheduleResponse:
    """
    Move an appointment to a new time.

    The source record is kept as ``rescheduled`` and a new appointment is
    returned alongside it.
    """
    return await service.reschedule(appointment_id, data)
