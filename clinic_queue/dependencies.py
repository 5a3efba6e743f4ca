"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_queue.database import get_db
from clinic_queue.services.appointment_service import AppointmentService
from clinic_queue.services.job_queue import JobQueue
from clinic_queue.services.queue_service import QueueService
from clinic_queue.services.worker import get_job_queue

# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Jobs = Annotated[JobQueue, Depends(get_job_queue)]


def get_appointment_service(db: DatabaseSession, job_queue: Jobs) -> AppointmentService:
    """Appointment service bound to the request's session."""
    return AppointmentService(db, job_queue)


def get_queue_service(db: DatabaseSession) -> QueueService:
    """Queue service bound to the request's session."""
    return QueueService(db)


Appointments = Annotated[AppointmentService, Depends(get_appointment_service)]
Queues = Annotated[QueueService, Depends(get_queue_service)]
