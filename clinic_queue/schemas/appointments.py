"""Appointment schemas for request/response validation."""

from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from clinic_queue.core.clock import UTCDateTime


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


# Statuses eligible for queue positioning
ACTIVE_STATUSES = frozenset(
    {
        AppointmentStatus.SCHEDULED,
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.IN_PROGRESS,
    }
)

TERMINAL_STATUSES = frozenset(
    {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    }
)


class AppointmentEventType(str, Enum):
    """Lifecycle event enumeration."""

    CREATED = "created"
    CHECKED_IN = "checked_in"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"
    DELAYED = "delayed"


class AppointmentCreate(BaseModel):
    """Schema for scheduling a new appointment."""

    doctor_id: UUID | None = None
    patient_id: UUID | None = None
    scheduled_at: datetime
    duration_minutes: int | None = Field(None, gt=0, le=24 * 60)
    notes: str | None = Field(None, max_length=1000)
    symptoms: str | None = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def validate_timezone(cls, v: datetime) -> datetime:
        """Require an explicit offset so the service day is unambiguous."""
        if v.tzinfo is None:
            raise ValueError("scheduled_at must include a timezone offset")
        return v


class CancelRequest(BaseModel):
    """Schema for cancelling an appointment."""

    reason: str | None = Field(None, max_length=500)
    notify_patient: bool = False


class RescheduleRequest(BaseModel):
    """Schema for rescheduling an appointment."""

    new_scheduled_at: datetime
    new_duration_minutes: int | None = Field(None, gt=0, le=24 * 60)

    @field_validator("new_scheduled_at")
    @classmethod
    def validate_timezone(cls, v: datetime) -> datetime:
        """Require an explicit offset so the service day is unambiguous."""
        if v.tzinfo is None:
            raise ValueError("new_scheduled_at must include a timezone offset")
        return v


class EmergencyAppointmentCreate(BaseModel):
    """Schema for inserting an emergency appointment at the front of a queue."""

    doctor_id: UUID
    patient_id: UUID
    scheduled_at: datetime | None = Field(None, description="Defaults to now")
    duration_minutes: int | None = Field(None, gt=0, le=24 * 60)
    reason: str = Field("Urgent attention required", min_length=1, max_length=500)
    symptoms: str | None = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def validate_timezone(cls, v: datetime | None) -> datetime | None:
        """Require an explicit offset so the service day is unambiguous."""
        if v is not None and v.tzinfo is None:
            raise ValueError("scheduled_at must include a timezone offset")
        return v


class NoShowSweepResult(BaseModel):
    """Appointments marked no-show by one sweep."""

    cutoff: UTCDateTime
    marked_count: int
    appointment_ids: list[UUID]


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    doctor_id: UUID
    patient_id: UUID
    scheduled_at: UTCDateTime
    service_day: date
    duration_minutes: int
    status: AppointmentStatus
    checked_in: bool
    checked_in_at: UTCDateTime | None = None
    actual_start_at: UTCDateTime | None = None
    actual_end_at: UTCDateTime | None = None
    queue_position: int | None = None
    estimated_start_at: UTCDateTime | None = None
    delay_minutes: int | None = None
    notes: str | None = None
    symptoms: str | None = None
    cancellation_reason: str | None = None
    rescheduled_from_id: UUID | None = None
    emergency: bool = False
    emergency_reason: str | None = None
    created_at: UTCDateTime
    updated_at: UTCDateTime

    model_config = {"from_attributes": True}


class RescheduleResponse(BaseModel):
    """Source record marked rescheduled plus its replacement."""

    previous: AppointmentResponse
    appointment: AppointmentResponse


class AppointmentEventResponse(BaseModel):
    """Schema for a lifecycle audit event."""

    id: UUID
    appointment_id: UUID
    event_type: AppointmentEventType
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    created_at: UTCDateTime

    model_config = {"from_attributes": True}


class ConflictResponse(BaseModel):
    """Overlapping active appointments for a proposed slot."""

    has_conflicts: bool
    conflict_count: int
    conflicts: list[AppointmentResponse]
