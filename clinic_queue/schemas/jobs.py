"""Job queue schemas and typed payloads."""

from datetime import date
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from clinic_queue.core.clock import UTCDateTime


class JobType(str, Enum):
    """Job type enumeration."""

    RECALCULATE_QUEUE = "recalculate_queue"
    SEND_NOTIFICATION = "send_notification"


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class RecalculateQueuePayload(BaseModel):
    """Payload of a recalculate_queue job."""

    doctor_id: UUID
    service_day: date
    start_from_position: int = Field(default=1, ge=1)
    trigger: str | None = None

    @property
    def key(self) -> str:
        """Serialization and coalescing key for the doctor's day."""
        return f"queue:{self.doctor_id}:{self.service_day.isoformat()}"


class SendNotificationPayload(BaseModel):
    """Payload of a send_notification job."""

    notification_id: UUID
    recipient_id: UUID
    type: str
    title: str
    message: str
    priority: str


class JobResponse(BaseModel):
    """Schema for job response."""

    id: UUID
    job_type: JobType
    status: JobStatus
    priority: int
    payload: dict[str, Any]
    dedupe_key: str | None = None
    lock_key: str | None = None
    retry_count: int
    max_retries: int
    error_message: str | None = None
    created_at: UTCDateTime
    scheduled_for: UTCDateTime
    started_at: UTCDateTime | None = None
    completed_at: UTCDateTime | None = None

    model_config = {"from_attributes": True}


class JobListResponse(BaseModel):
    """Schema for paginated job list response."""

    total: int
    page: int
    page_size: int
    items: list[JobResponse]


class JobAccepted(BaseModel):
    """Acknowledgement that a job was queued (not that it succeeded)."""

    job_id: UUID
    status: JobStatus = JobStatus.PENDING


class JobStats(BaseModel):
    """Job counts for operators."""

    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]


class DispatchResult(BaseModel):
    """Outcome counters of one dispatch cycle."""

    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    errored: int = Field(default=0, description="Lock groups aborted by an unexpected error")
