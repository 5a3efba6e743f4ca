"""Notification schemas."""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from clinic_queue.core.clock import UTCDateTime


class NotificationType(str, Enum):
    """Notification type enumeration."""

    APPOINTMENT = "appointment"
    PAYMENT = "payment"
    SYSTEM = "system"


class NotificationPriority(str, Enum):
    """Notification priority levels."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, Enum):
    """Notification delivery status."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Job queue priority used for delivery of each notification priority
DELIVERY_JOB_PRIORITY = {
    NotificationPriority.URGENT: 1,
    NotificationPriority.HIGH: 2,
    NotificationPriority.NORMAL: 5,
    NotificationPriority.LOW: 8,
}


class NotificationCreate(BaseModel):
    """Schema for queueing a notification."""

    notification_type: NotificationType = NotificationType.SYSTEM
    recipient_id: UUID
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    priority: NotificationPriority = NotificationPriority.NORMAL
    event_key: str | None = Field(None, max_length=200)


class NotificationResponse(BaseModel):
    """Schema for notification response."""

    id: UUID
    notification_type: NotificationType
    recipient_id: UUID
    title: str
    message: str
    priority: NotificationPriority
    status: NotificationStatus
    event_key: str | None = None
    job_id: UUID | None = None
    failure_reason: str | None = None
    created_at: UTCDateTime
    sent_at: UTCDateTime | None = None

    model_config = {"from_attributes": True}


class NotificationStats(BaseModel):
    """Delivery counters for operator follow-up."""

    total: int
    pending: int
    sent: int
    failed: int
    by_type: dict[str, int]
