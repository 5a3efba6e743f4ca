"""Queue snapshot schemas."""

from datetime import date
from uuid import UUID

from pydantic import BaseModel, Field

from clinic_queue.core.clock import UTCDateTime
from clinic_queue.schemas.appointments import AppointmentStatus


class QueueEntry(BaseModel):
    """One active appointment in a doctor's day queue."""

    appointment_id: UUID
    patient_id: UUID
    status: AppointmentStatus
    checked_in: bool
    queue_position: int | None
    scheduled_at: UTCDateTime
    estimated_start_at: UTCDateTime | None
    delay_minutes: int | None
    duration_minutes: int
    emergency: bool = False


class QueueSnapshot(BaseModel):
    """Current ordering for a doctor and service day."""

    doctor_id: UUID
    service_day: date
    entries: list[QueueEntry]
    queue_length: int
    estimated_completion_at: UTCDateTime | None = None


class RecalculationResult(BaseModel):
    """Outcome of one recalculation run."""

    doctor_id: UUID
    service_day: date
    active_count: int
    updated_count: int
    cleared_count: int
    last_estimated_end_at: UTCDateTime | None = None


class DoctorDelayRequest(BaseModel):
    """Schema for announcing that a doctor is running late."""

    delay_minutes: int = Field(..., gt=0, le=12 * 60)
    notify_patients: bool = True


class DoctorDelayResult(BaseModel):
    """Waiting appointments pushed back by a doctor delay."""

    doctor_id: UUID
    service_day: date
    delay_minutes: int
    affected_count: int
    appointment_ids: list[UUID]
