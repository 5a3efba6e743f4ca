"""Job queue table."""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from clinic_queue.core.clock import utcnow
from clinic_queue.models.base import metadata

jobs = Table(
    "jobs",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("job_type", String(40), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("priority", Integer, nullable=False, server_default="5"),
    Column("payload", JSON, nullable=False),
    # Pending jobs sharing a dedupe key are coalesced on enqueue
    Column("dedupe_key", String(200), nullable=True),
    # Jobs sharing a lock key never run concurrently
    Column("lock_key", String(200), nullable=True),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("max_retries", Integer, nullable=False, server_default="3"),
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("scheduled_for", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    CheckConstraint(
        "job_type IN ('recalculate_queue', 'send_notification')",
        name="jobs_type_check",
    ),
    CheckConstraint(
        "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
        name="jobs_status_check",
    ),
    CheckConstraint("retry_count <= max_retries", name="jobs_retry_bound_check"),
    Index("idx_jobs_dispatch", "status", "scheduled_for", "priority"),
    Index("idx_jobs_type", "job_type"),
    Index(
        "idx_jobs_pending_dedupe",
        "dedupe_key",
        postgresql_where=text("status = 'pending'"),
        sqlite_where=text("status = 'pending'"),
    ),
)
