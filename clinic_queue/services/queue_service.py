"""Queue recalculation engine.

Positions and estimated start times follow a single-server-per-doctor model:
active appointments are served in scheduled order, emergencies first, and a
late start pushes every later appointment of the day back (cascading delay).
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_queue.core.clock import as_utc, utcnow
from clinic_queue.core.exceptions import TransientStoreError
from clinic_queue.models.appointments import appointments
from clinic_queue.schemas.appointments import ACTIVE_STATUSES, AppointmentStatus
from clinic_queue.schemas.queue import QueueEntry, QueueSnapshot, RecalculationResult
from clinic_queue.services.lifecycle import cleared_queue_fields

logger = structlog.get_logger(__name__)

ACTIVE_STATUS_VALUES = sorted(status.value for status in ACTIVE_STATUSES)


@dataclass(frozen=True)
class QueueInput:
    """Fields of an appointment the queue computation depends on."""

    appointment_id: UUID
    scheduled_at: datetime
    duration_minutes: int
    status: AppointmentStatus
    actual_start_at: datetime | None = None
    emergency: bool = False

    @classmethod
    def from_row(cls, row: Any) -> "QueueInput":
        """Build from an ``appointments`` row."""
        return cls(
            appointment_id=row.id,
            scheduled_at=as_utc(row.scheduled_at),
            duration_minutes=row.duration_minutes,
            status=AppointmentStatus(row.status),
            actual_start_at=as_utc(row.actual_start_at),
            emergency=bool(row.emergency),
        )


@dataclass(frozen=True)
class QueueSlot:
    """Computed queue fields for one active appointment."""

    appointment_id: UUID
    queue_position: int
    estimated_start_at: datetime
    delay_minutes: int

    @property
    def values(self) -> dict[str, Any]:
        """Column values to write back."""
        return {
            "queue_position": self.queue_position,
            "estimated_start_at": self.estimated_start_at,
            "delay_minutes": self.delay_minutes,
        }


def compute_queue(items: Iterable[QueueInput], start_from_position: int = 1) -> list[QueueSlot]:
    """
    Derive queue positions and estimated start times.

    Active appointments are ordered by scheduled time, ties broken by id, and
    numbered from ``start_from_position``. Each estimate is the later of the
    appointment's own scheduled time and the previous estimate plus the
    previous duration. An in-progress appointment is anchored on its actual
    start time instead of its scheduled time; the cascade still never lets an
    estimate precede the end of the appointment queued before it.

    Emergency appointments that have not started yet move ahead of every
    other waiting appointment, behind consultations already in progress.

    Args:
        items: Appointments of one doctor and service day, any status
        start_from_position: Position given to the first active appointment

    Returns:
        One slot per active appointment, in queue order
    """
    if start_from_position < 1:
        raise ValueError("start_from_position must be >= 1")

    ordered = sorted(
        (item for item in items if AppointmentStatus(item.status) in ACTIVE_STATUSES),
        key=lambda item: (as_utc(item.scheduled_at), str(item.appointment_id)),
    )
    ordered = _emergencies_first(ordered)

    slots: list[QueueSlot] = []
    previous_end: datetime | None = None
    for position, item in enumerate(ordered, start=start_from_position):
        scheduled_at = as_utc(item.scheduled_at)
        anchor = scheduled_at
        if item.status == AppointmentStatus.IN_PROGRESS.value and item.actual_start_at is not None:
            anchor = as_utc(item.actual_start_at)

        estimated = anchor if previous_end is None else max(anchor, previous_end)
        delay = max(0, int((estimated - scheduled_at).total_seconds() // 60))

        slots.append(
            QueueSlot(
                appointment_id=item.appointment_id,
                queue_position=position,
                estimated_start_at=estimated,
                delay_minutes=delay,
            )
        )
        previous_end = estimated + timedelta(minutes=item.duration_minutes)

    return slots


def _emergencies_first(ordered: list[QueueInput]) -> list[QueueInput]:
    waiting_emergencies = [
        item
        for item in ordered
        if item.emergency and item.status != AppointmentStatus.IN_PROGRESS.value
    ]
    if not waiting_emergencies:
        return ordered
    in_progress = [item for item in ordered if item.status == AppointmentStatus.IN_PROGRESS.value]
    moved = {item.appointment_id for item in in_progress + waiting_emergencies}
    rest = [item for item in ordered if item.appointment_id not in moved]
    return in_progress + waiting_emergencies + rest


def _differs(row: Any, slot: QueueSlot) -> bool:
    return (
        row.queue_position != slot.queue_position
        or as_utc(row.estimated_start_at) != slot.estimated_start_at
        or row.delay_minutes != slot.delay_minutes
    )


def _holds_queue_fields(row: Any) -> bool:
    return (
        row.queue_position is not None
        or row.estimated_start_at is not None
        or row.delay_minutes is not None
    )


class QueueService:
    """Service reading and rewriting a doctor's day queue."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    async def _day_rows(self, doctor_id: UUID, service_day: date) -> list[Any]:
        stmt = select(appointments).where(
            and_(
                appointments.c.doctor_id == doctor_id,
                appointments.c.service_day == service_day,
            )
        )
        result = await self.db.execute(stmt)
        return list(result.fetchall())

    async def recalculate(
        self,
        doctor_id: UUID,
        service_day: date,
        start_from_position: int = 1,
    ) -> RecalculationResult:
        """
        Recompute and persist the queue for one doctor and service day.

        Only rows whose computed values changed are written, and all writes
        are committed together. Stale queue fields on rows that left the
        active set are cleared in the same batch. A row that leaves the
        active set between the read and the write aborts the whole batch.

        Args:
            doctor_id: Doctor whose queue is recomputed
            service_day: Clinic-local date of the queue
            start_from_position: Position given to the first active appointment

        Returns:
            Counts of what was written

        Raises:
            TransientStoreError: If reading or writing the batch fails
        """
        try:
            rows = await self._day_rows(doctor_id, service_day)
            by_id = {row.id: row for row in rows}
            slots = compute_queue(
                (QueueInput.from_row(row) for row in rows),
                start_from_position=start_from_position,
            )

            changed = [slot for slot in slots if _differs(by_id[slot.appointment_id], slot)]
            active_ids = {slot.appointment_id for slot in slots}
            stale = [
                row.id for row in rows if row.id not in active_ids and _holds_queue_fields(row)
            ]

            if changed or stale:
                await self._write_back(changed, stale)
                await self.db.commit()
            else:
                await self.db.rollback()
        except TransientStoreError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(
                "queue_recalculation_failed",
                doctor_id=str(doctor_id),
                service_day=service_day.isoformat(),
                error=str(e),
            )
            raise TransientStoreError(f"Queue write-back failed: {e}") from e

        last_end = None
        if slots:
            last = slots[-1]
            last_end = last.estimated_start_at + timedelta(
                minutes=by_id[last.appointment_id].duration_minutes
            )

        logger.info(
            "queue_recalculated",
            doctor_id=str(doctor_id),
            service_day=service_day.isoformat(),
            active=len(slots),
            updated=len(changed),
            cleared=len(stale),
        )

        return RecalculationResult(
            doctor_id=doctor_id,
            service_day=service_day,
            active_count=len(slots),
            updated_count=len(changed),
            cleared_count=len(stale),
            last_estimated_end_at=last_end,
        )

    async def _write_back(self, changed: list[QueueSlot], stale: list[UUID]) -> None:
        now = utcnow()

        # Release old positions first so the unique slot index never sees a transient duplicate
        released = [slot.appointment_id for slot in changed] + stale
        await self.db.execute(
            update(appointments)
            .where(appointments.c.id.in_(released))
            .values(queue_position=None)
        )
        if stale:
            await self.db.execute(
                update(appointments)
                .where(appointments.c.id.in_(stale))
                .values(**cleared_queue_fields(), updated_at=now)
            )
        for slot in changed:
            result = await self.db.execute(
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == slot.appointment_id,
                        appointments.c.status.in_(ACTIVE_STATUS_VALUES),
                    )
                )
                .values(**slot.values, updated_at=now)
            )
            if result.rowcount != 1:
                # Cancelled, completed or no-showed after the day was read
                logger.warning(
                    "queue_row_left_active_set",
                    appointment_id=str(slot.appointment_id),
                )
                raise TransientStoreError(
                    f"Appointment {slot.appointment_id} changed during queue recalculation"
                )

    async def get_queue(self, doctor_id: UUID, service_day: date) -> QueueSnapshot:
        """
        Get the current ordering for a doctor's day.

        Args:
            doctor_id: Doctor ID
            service_day: Clinic-local date

        Returns:
            Active appointments in queue order
        """
        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.doctor_id == doctor_id,
                    appointments.c.service_day == service_day,
                    appointments.c.status.in_(ACTIVE_STATUS_VALUES),
                )
            )
            .order_by(
                appointments.c.queue_position.is_(None),
                appointments.c.queue_position,
                appointments.c.scheduled_at,
            )
        )
        result = await self.db.execute(stmt)
        rows = result.fetchall()

        entries = [
            QueueEntry(
                appointment_id=row.id,
                patient_id=row.patient_id,
                status=row.status,
                checked_in=row.checked_in,
                queue_position=row.queue_position,
                scheduled_at=as_utc(row.scheduled_at),
                estimated_start_at=as_utc(row.estimated_start_at),
                delay_minutes=row.delay_minutes,
                duration_minutes=row.duration_minutes,
                emergency=row.emergency,
            )
            for row in rows
        ]

        completion = None
        ends = [
            entry.estimated_start_at + timedelta(minutes=entry.duration_minutes)
            for entry in entries
            if entry.estimated_start_at is not None
        ]
        if ends:
            completion = max(ends)

        return QueueSnapshot(
            doctor_id=doctor_id,
            service_day=service_day,
            entries=entries,
            queue_length=len(entries),
            estimated_completion_at=completion,
        )
