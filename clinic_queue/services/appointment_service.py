"""Appointment service for lifecycle operations."""

from datetime import date, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_queue.config import settings
from clinic_queue.core.clock import as_utc, service_day_for, utcnow
from clinic_queue.core.exceptions import (
    ConflictException,
    NotFoundException,
    TransientStoreError,
    ValidationException,
)
from clinic_queue.models.appointments import appointment_events, appointments
from clinic_queue.schemas.appointments import (
    AppointmentCreate,
    AppointmentEventResponse,
    AppointmentEventType,
    AppointmentResponse,
    AppointmentStatus,
    CancelRequest,
    ConflictResponse,
    EmergencyAppointmentCreate,
    NoShowSweepResult,
    RescheduleRequest,
    RescheduleResponse,
)
from clinic_queue.schemas.jobs import JobType
from clinic_queue.schemas.queue import DoctorDelayRequest, DoctorDelayResult
from clinic_queue.services.job_queue import JobQueue
from clinic_queue.services.lifecycle import (
    DEFAULT_RECALCULATION_PRIORITY,
    RECALCULATION_PRIORITY,
    URGENT_RECALCULATION_PRIORITY,
    Action,
    cleared_queue_fields,
    ensure_transition,
    leaves_queue,
)
from clinic_queue.services.notification_service import (
    NotificationService,
    appointment_notification,
)
from clinic_queue.services.queue_service import ACTIVE_STATUS_VALUES

logger = structlog.get_logger(__name__)

# Upper bound on duration, used to widen the conflict search window
MAX_DURATION = timedelta(hours=24)


def _json_safe(values: dict[str, Any]) -> dict[str, Any]:
    safe = {}
    for key, value in values.items():
        if isinstance(value, (datetime, date)):
            safe[key] = value.isoformat()
        elif isinstance(value, UUID):
            safe[key] = str(value)
        else:
            safe[key] = value
    return safe


def _local_time(value: datetime) -> str:
    return as_utc(value).astimezone(ZoneInfo(settings.clinic_timezone)).strftime("%b %d, %I:%M %p")


class AppointmentService:
    """Service driving appointments through their lifecycle."""

    def __init__(self, db: AsyncSession, job_queue: JobQueue):
        """Initialize service with database session and job queue."""
        self.db = db
        self.job_queue = job_queue

    async def _get_row(self, appointment_id: UUID) -> Any:
        result = await self.db.execute(
            select(appointments).where(appointments.c.id == appointment_id)
        )
        row = result.fetchone()
        if not row:
            raise NotFoundException("Appointment not found")
        return row

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("appointment_commit_failed", error=str(e))
            raise TransientStoreError(f"Could not save appointment: {e}") from e

    async def _record_event(
        self,
        appointment_id: UUID,
        event_type: AppointmentEventType,
        old_values: dict[str, Any] | None,
        new_values: dict[str, Any] | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.db.execute(
            appointment_events.insert().values(
                id=uuid4(),
                appointment_id=appointment_id,
                event_type=event_type.value,
                old_values=_json_safe(old_values) if old_values else None,
                new_values=_json_safe(new_values) if new_values else None,
                metadata=_json_safe(metadata) if metadata else None,
                created_at=utcnow(),
            )
        )

    async def _enqueue_recalculation(
        self,
        doctor_id: UUID,
        service_day: date,
        trigger: AppointmentEventType,
        priority: int = DEFAULT_RECALCULATION_PRIORITY,
    ) -> UUID:
        return await self.job_queue.enqueue(
            JobType.RECALCULATE_QUEUE,
            {
                "doctor_id": str(doctor_id),
                "service_day": service_day.isoformat(),
                "trigger": trigger.value,
            },
            priority=priority,
            session=self.db,
        )

    async def _ensure_no_conflicts(
        self,
        doctor_id: UUID,
        scheduled_at: datetime,
        duration_minutes: int,
        exclude_id: UUID | None = None,
    ) -> None:
        if not settings.reject_conflicting_appointments:
            return
        conflicts = await self.check_conflicts(doctor_id, scheduled_at, duration_minutes, exclude_id)
        if conflicts.has_conflicts:
            raise ValidationException(
                f"Doctor already has {conflicts.conflict_count} appointment(s) overlapping this slot"
            )

    async def _insert_appointment(
        self,
        doctor_id: UUID,
        patient_id: UUID,
        scheduled_at: datetime,
        duration_minutes: int,
        notes: str | None = None,
        symptoms: str | None = None,
        rescheduled_from_id: UUID | None = None,
        emergency: bool = False,
        emergency_reason: str | None = None,
    ) -> UUID:
        appointment_id = uuid4()
        now = utcnow()
        await self.db.execute(
            appointments.insert().values(
                id=appointment_id,
                doctor_id=doctor_id,
                patient_id=patient_id,
                scheduled_at=scheduled_at,
                service_day=service_day_for(scheduled_at),
                duration_minutes=duration_minutes,
                status=AppointmentStatus.SCHEDULED.value,
                checked_in=False,
                notes=notes,
                symptoms=symptoms,
                rescheduled_from_id=rescheduled_from_id,
                emergency=emergency,
                emergency_reason=emergency_reason,
                created_at=now,
                updated_at=now,
            )
        )
        return appointment_id

    async def schedule_appointment(self, data: AppointmentCreate) -> AppointmentResponse:
        """
        Schedule a new appointment.

        The appointment is created scheduled; its queue slot is assigned by
        the recalculation job enqueued in the same transaction.

        Args:
            data: Appointment creation data

        Returns:
            Created appointment

        Raises:
            ValidationException: If the doctor or patient is missing, or the
                slot conflicts and conflicts are rejected
        """
        if data.doctor_id is None:
            raise ValidationException("A doctor must be selected")
        if data.patient_id is None:
            raise ValidationException("A patient must be selected")

        scheduled_at = as_utc(data.scheduled_at)
        duration = data.duration_minutes or settings.default_duration_minutes
        await self._ensure_no_conflicts(data.doctor_id, scheduled_at, duration)

        appointment_id = await self._insert_appointment(
            doctor_id=data.doctor_id,
            patient_id=data.patient_id,
            scheduled_at=scheduled_at,
            duration_minutes=duration,
            notes=data.notes,
            symptoms=data.symptoms,
        )
        service_day = service_day_for(scheduled_at)
        await self._record_event(
            appointment_id,
            AppointmentEventType.CREATED,
            None,
            {"status": AppointmentStatus.SCHEDULED.value, "scheduled_at": scheduled_at},
        )
        await self._enqueue_recalculation(data.doctor_id, service_day, AppointmentEventType.CREATED)
        await NotificationService.notify(
            self.db,
            self.job_queue,
            appointment_notification(
                data.patient_id,
                "Appointment Scheduled",
                f"Your appointment is scheduled for {_local_time(scheduled_at)}",
                event_key=f"appointment:{appointment_id}:created",
            ),
            commit=False,
        )
        await self._commit()

        logger.info(
            "appointment_scheduled",
            appointment_id=str(appointment_id),
            doctor_id=str(data.doctor_id),
            service_day=service_day.isoformat(),
        )
        return await self.get_appointment(appointment_id)

    async def _transition(
        self,
        appointment_id: UUID,
        action: Action,
        values: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Any, AppointmentEventType]:
        """
        Apply a lifecycle action without committing.

        The status update is conditional on the status that was read, so a
        concurrent transition on the same appointment makes this one fail
        instead of silently overwriting it.
        """
        row = await self._get_row(appointment_id)
        target, event = ensure_transition(action, row.status, row.checked_in)

        new_values = {"status": target.value, **(values or {})}
        if leaves_queue(target):
            new_values.update(cleared_queue_fields())

        result = await self.db.execute(
            update(appointments)
            .where(and_(appointments.c.id == row.id, appointments.c.status == row.status))
            .values(**new_values, updated_at=utcnow())
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictException("Appointment was modified concurrently, please retry")

        await self._record_event(
            row.id,
            event,
            {"status": row.status},
            {key: value for key, value in new_values.items() if value is not None},
            metadata,
        )
        await self._enqueue_recalculation(
            row.doctor_id,
            row.service_day,
            event,
            priority=RECALCULATION_PRIORITY.get(action, DEFAULT_RECALCULATION_PRIORITY),
        )

        logger.info(
            "appointment_transitioned",
            appointment_id=str(row.id),
            action=action.name.lower(),
            from_status=row.status,
            to_status=target.value,
        )
        return row, event

    async def check_in(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Check a patient in.

        Raises:
            NotFoundException: If appointment not found
            InvalidTransition: If the appointment is not scheduled
        """
        await self._transition(
            appointment_id,
            Action.CHECK_IN,
            {"checked_in": True, "checked_in_at": utcnow()},
        )
        await self._commit()
        return await self.get_appointment(appointment_id)

    async def start(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Start the consultation of a checked-in patient.

        Raises:
            NotFoundException: If appointment not found
            InvalidTransition: If the patient is not checked in
        """
        await self._transition(
            appointment_id,
            Action.START,
            {"checked_in": True, "actual_start_at": utcnow()},
        )
        await self._commit()
        return await self.get_appointment(appointment_id)

    async def complete(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Complete an in-progress consultation.

        Raises:
            NotFoundException: If appointment not found
            InvalidTransition: If the appointment is not in progress
        """
        await self._transition(appointment_id, Action.COMPLETE, {"actual_end_at": utcnow()})
        await self._commit()
        return await self.get_appointment(appointment_id)

    async def mark_no_show(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Mark a patient as not having shown up.

        Raises:
            NotFoundException: If appointment not found
            InvalidTransition: If the appointment is already terminal
        """
        await self._transition(appointment_id, Action.NO_SHOW)
        await self._commit()
        return await self.get_appointment(appointment_id)

    async def cancel(self, appointment_id: UUID, data: CancelRequest) -> AppointmentResponse:
        """
        Cancel an appointment.

        Args:
            appointment_id: Appointment ID
            data: Cancellation reason and whether to notify the patient

        Raises:
            NotFoundException: If appointment not found
            InvalidTransition: If the appointment is already terminal
        """
        row, _ = await self._transition(
            appointment_id,
            Action.CANCEL,
            {"cancellation_reason": data.reason},
            {"reason": data.reason} if data.reason else None,
        )
        if data.notify_patient:
            message = f"Your appointment on {_local_time(row.scheduled_at)} was cancelled"
            if data.reason:
                message = f"{message}: {data.reason}"
            await NotificationService.notify(
                self.db,
                self.job_queue,
                appointment_notification(
                    row.patient_id,
                    "Appointment Cancelled",
                    message,
                    event_key=f"appointment:{row.id}:cancelled",
                ),
                commit=False,
            )
        await self._commit()
        return await self.get_appointment(appointment_id)

    async def reschedule(self, appointment_id: UUID, data: RescheduleRequest) -> RescheduleResponse:
        """
        Move an appointment to a new time.

        The source record is kept as ``rescheduled`` and a fresh scheduled
        appointment is created. Both affected days are recalculated.

        Args:
            appointment_id: Appointment ID
            data: New time and optional new duration

        Returns:
            The rescheduled source record and its replacement

        Raises:
            NotFoundException: If appointment not found
            InvalidTransition: If the appointment is already terminal
            ValidationException: If the new slot conflicts and conflicts are rejected
        """
        source = await self._get_row(appointment_id)
        new_scheduled_at = as_utc(data.new_scheduled_at)
        duration = data.new_duration_minutes or source.duration_minutes
        # Validates the transition before the conflict check so terminal rows fail with 409
        ensure_transition(Action.RESCHEDULE, source.status, source.checked_in)
        await self._ensure_no_conflicts(source.doctor_id, new_scheduled_at, duration, source.id)

        new_id = await self._insert_appointment(
            doctor_id=source.doctor_id,
            patient_id=source.patient_id,
            scheduled_at=new_scheduled_at,
            duration_minutes=duration,
            notes=source.notes,
            symptoms=source.symptoms,
            rescheduled_from_id=source.id,
        )
        await self._transition(
            appointment_id,
            Action.RESCHEDULE,
            metadata={"new_appointment_id": new_id, "new_scheduled_at": new_scheduled_at},
        )

        new_day = service_day_for(new_scheduled_at)
        await self._record_event(
            new_id,
            AppointmentEventType.CREATED,
            None,
            {"status": AppointmentStatus.SCHEDULED.value, "scheduled_at": new_scheduled_at},
            {"rescheduled_from_id": source.id},
        )
        if new_day != source.service_day:
            await self._enqueue_recalculation(
                source.doctor_id, new_day, AppointmentEventType.RESCHEDULED
            )

        await NotificationService.notify(
            self.db,
            self.job_queue,
            appointment_notification(
                source.patient_id,
                "Appointment Rescheduled",
                f"Your appointment was moved from {_local_time(source.scheduled_at)} "
                f"to {_local_time(new_scheduled_at)}",
                event_key=f"appointment:{source.id}:rescheduled",
            ),
            commit=False,
        )
        await self._commit()

        return RescheduleResponse(
            previous=await self.get_appointment(source.id),
            appointment=await self.get_appointment(new_id),
        )

    async def insert_emergency_appointment(
        self, data: EmergencyAppointmentCreate
    ) -> AppointmentResponse:
        """
        Insert an emergency appointment at the front of a doctor's queue.

        The appointment is served after any consultation already in progress
        and before every waiting patient, who are pushed back by the
        recalculation enqueued in the same transaction. Overlap with existing
        appointments is expected and never rejected.

        Args:
            data: Emergency appointment data; ``scheduled_at`` defaults to now

        Returns:
            Created appointment
        """
        scheduled_at = as_utc(data.scheduled_at) or utcnow()
        duration = data.duration_minutes or settings.default_duration_minutes

        appointment_id = await self._insert_appointment(
            doctor_id=data.doctor_id,
            patient_id=data.patient_id,
            scheduled_at=scheduled_at,
            duration_minutes=duration,
            symptoms=data.symptoms,
            emergency=True,
            emergency_reason=data.reason,
        )
        service_day = service_day_for(scheduled_at)
        await self._record_event(
            appointment_id,
            AppointmentEventType.CREATED,
            None,
            {
                "status": AppointmentStatus.SCHEDULED.value,
                "scheduled_at": scheduled_at,
                "emergency": True,
            },
            {"reason": data.reason},
        )
        await self._enqueue_recalculation(
            data.doctor_id,
            service_day,
            AppointmentEventType.CREATED,
            priority=URGENT_RECALCULATION_PRIORITY,
        )
        await self._commit()

        logger.warning(
            "emergency_appointment_inserted",
            appointment_id=str(appointment_id),
            doctor_id=str(data.doctor_id),
            service_day=service_day.isoformat(),
            reason=data.reason,
        )
        return await self.get_appointment(appointment_id)

    async def add_doctor_delay(
        self,
        doctor_id: UUID,
        service_day: date,
        data: DoctorDelayRequest,
    ) -> DoctorDelayResult:
        """
        Push every waiting appointment of a doctor's day back.

        Scheduled and checked-in appointments move by ``delay_minutes`` and
        keep their service day; a consultation already in progress is left
        alone. Each move is audited, and patients are told the new time when
        ``notify_patients`` is set.

        Args:
            doctor_id: Doctor running late
            service_day: Clinic-local date of the queue
            data: Delay and notification choice

        Returns:
            The appointments that were moved

        Raises:
            ConflictException: If an appointment changed status while moving
        """
        waiting = [AppointmentStatus.SCHEDULED.value, AppointmentStatus.CHECKED_IN.value]
        result = await self.db.execute(
            select(appointments)
            .where(
                and_(
                    appointments.c.doctor_id == doctor_id,
                    appointments.c.service_day == service_day,
                    appointments.c.status.in_(waiting),
                )
            )
            .order_by(appointments.c.scheduled_at, appointments.c.id)
        )
        rows = result.fetchall()

        shift = timedelta(minutes=data.delay_minutes)
        now = utcnow()
        for row in rows:
            old_at = as_utc(row.scheduled_at)
            new_at = old_at + shift
            moved = await self.db.execute(
                update(appointments)
                .where(and_(appointments.c.id == row.id, appointments.c.status == row.status))
                .values(scheduled_at=new_at, updated_at=now)
            )
            if moved.rowcount != 1:
                await self.db.rollback()
                raise ConflictException("Appointment was modified concurrently, please retry")

            await self._record_event(
                row.id,
                AppointmentEventType.DELAYED,
                {"scheduled_at": old_at},
                {"scheduled_at": new_at},
                {"delay_minutes": data.delay_minutes},
            )
            if data.notify_patients:
                await NotificationService.notify(
                    self.db,
                    self.job_queue,
                    appointment_notification(
                        row.patient_id,
                        "Appointment Delayed",
                        f"The doctor is running {data.delay_minutes} minutes late. "
                        f"Your appointment is now at {_local_time(new_at)}",
                        event_key=f"appointment:{row.id}:delayed:{new_at.isoformat()}",
                    ),
                    commit=False,
                )

        if rows:
            await self._enqueue_recalculation(
                doctor_id,
                service_day,
                AppointmentEventType.DELAYED,
                priority=URGENT_RECALCULATION_PRIORITY,
            )
        await self._commit()

        logger.info(
            "doctor_delay_applied",
            doctor_id=str(doctor_id),
            service_day=service_day.isoformat(),
            delay_minutes=data.delay_minutes,
            affected=len(rows),
        )
        return DoctorDelayResult(
            doctor_id=doctor_id,
            service_day=service_day,
            delay_minutes=data.delay_minutes,
            affected_count=len(rows),
            appointment_ids=[row.id for row in rows],
        )

    async def mark_overdue_no_shows(
        self,
        now: datetime | None = None,
        grace_minutes: int | None = None,
    ) -> NoShowSweepResult:
        """
        Mark scheduled appointments whose patient never arrived as no-shows.

        An appointment qualifies when it is still scheduled, the patient is
        not checked in, and its scheduled time is more than ``grace_minutes``
        in the past. Rows that change while the sweep runs are skipped.

        Args:
            now: Reference time (defaults to the current time)
            grace_minutes: Minutes of tolerance (defaults to ``NO_SHOW_GRACE_MINUTES``)

        Returns:
            The cutoff used and the appointments marked
        """
        now = as_utc(now) or utcnow()
        grace = settings.no_show_grace_minutes if grace_minutes is None else grace_minutes
        cutoff = now - timedelta(minutes=grace)
        note = f"Marked no-show: patient did not arrive within {grace} minutes of the scheduled time"

        result = await self.db.execute(
            select(appointments)
            .where(
                and_(
                    appointments.c.status == AppointmentStatus.SCHEDULED.value,
                    appointments.c.checked_in.is_(False),
                    appointments.c.scheduled_at < cutoff,
                )
            )
            .order_by(appointments.c.scheduled_at, appointments.c.id)
        )

        marked: list[UUID] = []
        queues: set[tuple[UUID, date]] = set()
        for row in result.fetchall():
            target, event = ensure_transition(Action.NO_SHOW, row.status, row.checked_in)
            updated = await self.db.execute(
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == row.id,
                        appointments.c.status == row.status,
                        appointments.c.checked_in.is_(False),
                    )
                )
                .values(
                    status=target.value,
                    notes=f"{row.notes}. {note}" if row.notes else note,
                    updated_at=now,
                    **cleared_queue_fields(),
                )
            )
            if updated.rowcount != 1:
                logger.info("no_show_skipped", appointment_id=str(row.id))
                continue

            await self._record_event(
                row.id,
                event,
                {"status": row.status},
                {"status": target.value},
                {"automatic": True, "grace_minutes": grace},
            )
            marked.append(row.id)
            queues.add((row.doctor_id, row.service_day))

        for doctor_id, service_day in sorted(queues, key=str):
            await self._enqueue_recalculation(doctor_id, service_day, AppointmentEventType.NO_SHOW)
        await self._commit()

        logger.info("overdue_no_shows_marked", count=len(marked), cutoff=cutoff.isoformat())
        return NoShowSweepResult(cutoff=cutoff, marked_count=len(marked), appointment_ids=marked)

    async def check_conflicts(
        self,
        doctor_id: UUID,
        scheduled_at: datetime,
        duration_minutes: int | None = None,
        exclude_id: UUID | None = None,
    ) -> ConflictResponse:
        """
        Find active appointments of a doctor overlapping a proposed slot.

        Args:
            doctor_id: Doctor ID
            scheduled_at: Proposed start
            duration_minutes: Proposed duration (defaults to settings)
            exclude_id: Appointment to ignore, e.g. the one being moved

        Returns:
            Overlapping appointments
        """
        start = as_utc(scheduled_at)
        end = start + timedelta(minutes=duration_minutes or settings.default_duration_minutes)

        conditions = [
            appointments.c.doctor_id == doctor_id,
            appointments.c.status.in_(ACTIVE_STATUS_VALUES),
            appointments.c.scheduled_at < end,
            appointments.c.scheduled_at > start - MAX_DURATION,
        ]
        if exclude_id:
            conditions.append(appointments.c.id != exclude_id)

        result = await self.db.execute(
            select(appointments).where(and_(*conditions)).order_by(appointments.c.scheduled_at)
        )
        conflicts = [
            AppointmentResponse.model_validate(dict(row._mapping))
            for row in result.fetchall()
            if as_utc(row.scheduled_at) + timedelta(minutes=row.duration_minutes) > start
        ]

        return ConflictResponse(
            has_conflicts=bool(conflicts),
            conflict_count=len(conflicts),
            conflicts=conflicts,
        )

    async def get_appointment(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        row = await self._get_row(appointment_id)
        return AppointmentResponse.model_validate(dict(row._mapping))

    async def list_events(self, appointment_id: UUID) -> list[AppointmentEventResponse]:
        """
        Get the lifecycle audit trail of an appointment, oldest first.

        Raises:
            NotFoundException: If appointment not found
        """
        await self._get_row(appointment_id)
        result = await self.db.execute(
            select(appointment_events)
            .where(appointment_events.c.appointment_id == appointment_id)
            .order_by(appointment_events.c.created_at, appointment_events.c.id)
        )
        return [
            AppointmentEventResponse.model_validate(dict(row._mapping))
            for row in result.fetchall()
        ]
