"""Database models."""

from clinic_queue.models.appointments import appointment_events, appointments
from clinic_queue.models.base import metadata
from clinic_queue.models.jobs import jobs
from clinic_queue.models.notifications import notifications

__all__ = [
    "appointment_events",
    "appointments",
    "jobs",
    "metadata",
    "notifications",
]
