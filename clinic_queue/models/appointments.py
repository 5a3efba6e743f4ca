"""Appointments and appointment events tables using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
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

ACTIVE_STATUS_SQL = "status IN ('scheduled', 'checked_in', 'in_progress')"

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # Ownership / references
    Column("doctor_id", Uuid, nullable=False),
    Column("patient_id", Uuid, nullable=False),
    # Schedule
    Column("scheduled_at", DateTime(timezone=True), nullable=False),
    Column("service_day", Date, nullable=False),
    Column("duration_minutes", Integer, nullable=False, server_default="30"),
    # Status management
    Column("status", String(20), nullable=False, server_default="scheduled"),
    Column("checked_in", Boolean, nullable=False, server_default=text("false")),
    Column("checked_in_at", DateTime(timezone=True), nullable=True),
    Column("actual_start_at", DateTime(timezone=True), nullable=True),
    Column("actual_end_at", DateTime(timezone=True), nullable=True),
    # Queue fields, written by the recalculation engine only
    Column("queue_position", Integer, nullable=True),
    Column("estimated_start_at", DateTime(timezone=True), nullable=True),
    Column("delay_minutes", Integer, nullable=True),
    # Details
    Column("notes", Text, nullable=True),
    Column("symptoms", Text, nullable=True),
    Column("cancellation_reason", Text, nullable=True),
    Column("rescheduled_from_id", Uuid, ForeignKey("appointments.id"), nullable=True),
    # Emergency appointments are served ahead of every waiting appointment
    Column("emergency", Boolean, nullable=False, server_default=text("false")),
    Column("emergency_reason", Text, nullable=True),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    # Constraints
    CheckConstraint(
        "status IN ('scheduled', 'checked_in', 'in_progress', 'completed', "
        "'cancelled', 'no_show', 'rescheduled')",
        name="appointments_status_check",
    ),
    CheckConstraint("duration_minutes > 0", name="appointments_duration_check"),
    CheckConstraint(
        "queue_position IS NULL OR queue_position >= 1",
        name="appointments_queue_position_check",
    ),
    Index("idx_appointments_doctor_day", "doctor_id", "service_day"),
    Index("idx_appointments_patient", "patient_id"),
    Index("idx_appointments_status", "status"),
    Index("idx_appointments_emergency", "emergency"),
    Index(
        "uq_appointments_queue_slot",
        "doctor_id",
        "service_day",
        "queue_position",
        unique=True,
        postgresql_where=text(ACTIVE_STATUS_SQL),
        sqlite_where=text(ACTIVE_STATUS_SQL),
    ),
)

# Lifecycle audit trail
appointment_events = Table(
    "appointment_events",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("event_type", String(30), nullable=False),
    Column("old_values", JSON, nullable=True),
    Column("new_values", JSON, nullable=True),
    Column("metadata", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    CheckConstraint(
        "event_type IN ('created', 'checked_in', 'started', 'completed', "
        "'cancelled', 'no_show', 'rescheduled', 'delayed')",
        name="appointment_events_type_check",
    ),
    Index("idx_appointment_events_appointment", "appointment_id"),
    Index("idx_appointment_events_created_at", "created_at"),
)
