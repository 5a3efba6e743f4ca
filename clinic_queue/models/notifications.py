"""Notification records tracking user-facing messages and their delivery status."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    String,
    Table,
    Text,
    Uuid,
)

from clinic_queue.core.clock import utcnow
from clinic_queue.models.base import metadata

notifications = Table(
    "notifications",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("notification_type", String(20), nullable=False),
    Column("recipient_id", Uuid, nullable=False),
    Column("title", Text, nullable=False),
    Column("message", Text, nullable=False),
    Column("priority", String(20), nullable=False, server_default="normal"),
    Column("status", String(20), nullable=False, server_default="pending"),
    # One record per triggering event
    Column("event_key", String(200), nullable=True, unique=True),
    Column("job_id", Uuid, nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("sent_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    CheckConstraint(
        "notification_type IN ('appointment', 'payment', 'system')",
        name="notifications_type_check",
    ),
    CheckConstraint(
        "priority IN ('low', 'normal', 'high', 'urgent')",
        name="notifications_priority_check",
    ),
    CheckConstraint(
        "status IN ('pending', 'sent', 'failed')",
        name="notifications_status_check",
    ),
    Index("idx_notifications_recipient", "recipient_id"),
    Index("idx_notifications_status", "status"),
    Index("idx_notifications_created_at", "created_at"),
)
