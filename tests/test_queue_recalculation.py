"""Tests for queue position and estimated start computation."""

from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from clinic_queue.core.exceptions import TransientStoreError
from clinic_queue.models import appointments
from clinic_queue.schemas.appointments import AppointmentStatus
from clinic_queue.schemas.jobs import JobStatus, JobType
from clinic_queue.services.queue_service import QueueInput, QueueService, QueueSlot, compute_queue
from tests.conftest import DAY, at


def item(hour: int, minute: int, status: str = "scheduled", duration: int = 30, **kwargs) -> QueueInput:
    return QueueInput(
        appointment_id=kwargs.pop("appointment_id", uuid4()),
        scheduled_at=at(hour, minute),
        duration_minutes=duration,
        status=AppointmentStatus(status),
        **kwargs,
    )


def test_cascading_delay() -> None:
    slots = compute_queue([item(9, 45), item(9, 0), item(9, 15)])

    assert [s.queue_position for s in slots] == [1, 2, 3]
    assert [s.estimated_start_at for s in slots] == [at(9, 0), at(9, 30), at(10, 0)]
    assert [s.delay_minutes for s in slots] == [0, 15, 15]


def test_in_progress_anchors_on_actual_start() -> None:
    slots = compute_queue(
        [
            item(9, 0, "in_progress", actual_start_at=at(9, 10)),
            item(9, 15),
            item(9, 45),
        ]
    )

    assert [s.estimated_start_at for s in slots] == [at(9, 10), at(9, 40), at(10, 10)]
    assert [s.delay_minutes for s in slots] == [10, 25, 25]


def test_early_actual_start_is_not_a_negative_delay() -> None:
    slots = compute_queue([item(9, 0, "in_progress", actual_start_at=at(8, 50)), item(9, 30)])

    assert slots[0].delay_minutes == 0
    assert slots[1].estimated_start_at == at(9, 30)


def test_cancelled_middle_leaves_no_gap() -> None:
    slots = compute_queue([item(9, 0), item(9, 15, "cancelled"), item(9, 45)])

    assert [s.queue_position for s in slots] == [1, 2]
    assert [s.estimated_start_at for s in slots] == [at(9, 0), at(9, 45)]


def test_only_active_statuses_are_queued() -> None:
    items = [item(9, 0, status) for status in AppointmentStatus]

    slots = compute_queue(items)

    assert len(slots) == 3


def test_ties_broken_by_id() -> None:
    low = UUID("00000000-0000-0000-0000-000000000001")
    high = UUID("ffffffff-0000-0000-0000-000000000000")

    forward = compute_queue([item(9, 0, appointment_id=high), item(9, 0, appointment_id=low)])
    backward = compute_queue([item(9, 0, appointment_id=low), item(9, 0, appointment_id=high)])

    assert [s.appointment_id for s in forward] == [low, high]
    assert forward == backward


def test_start_from_position() -> None:
    slots = compute_queue([item(9, 0), item(10, 0)], start_from_position=5)
    assert [s.queue_position for s in slots] == [5, 6]

    with pytest.raises(ValueError):
        compute_queue([item(9, 0)], start_from_position=0)


def test_empty_day() -> None:
    assert compute_queue([]) == []


def test_monotonic_cascade() -> None:
    items = [
        item(8, 0, duration=45),
        item(8, 20, duration=10),
        item(8, 25, "in_progress", duration=20, actual_start_at=at(8, 5)),
        item(9, 0, duration=60),
        item(9, 5, duration=15),
        item(11, 0, duration=30),
    ]
    by_id = {i.appointment_id: i for i in items}

    slots = compute_queue(items)

    for previous, current in zip(slots, slots[1:]):
        duration = timedelta(minutes=by_id[previous.appointment_id].duration_minutes)
        assert current.estimated_start_at >= previous.estimated_start_at + duration


async def _rows(db_session, doctor_id):
    result = await db_session.execute(
        select(appointments)
        .where(appointments.c.doctor_id == doctor_id)
        .order_by(appointments.c.scheduled_at)
    )
    return result.fetchall()


@pytest.mark.asyncio
async def test_recalculate_writes_positions(db_session, make_appointment, doctor_id) -> None:
    for minute in (0, 15, 45):
        await make_appointment(at(9, minute), doctor_id)

    result = await QueueService(db_session).recalculate(doctor_id, DAY)

    assert result.active_count == 3
    assert result.updated_count == 3
    assert result.last_estimated_end_at == at(10, 30)
    rows = await _rows(db_session, doctor_id)
    assert [r.queue_position for r in rows] == [1, 2, 3]
    assert [r.delay_minutes for r in rows] == [0, 15, 15]


@pytest.mark.asyncio
async def test_recalculate_is_idempotent(db_session, make_appointment, doctor_id) -> None:
    for minute in (0, 15, 45):
        await make_appointment(at(9, minute), doctor_id)
    service = QueueService(db_session)

    await service.recalculate(doctor_id, DAY)
    first = [(r.queue_position, r.estimated_start_at) for r in await _rows(db_session, doctor_id)]
    second_result = await service.recalculate(doctor_id, DAY)
    second = [(r.queue_position, r.estimated_start_at) for r in await _rows(db_session, doctor_id)]

    assert second_result.updated_count == 0
    assert first == second


@pytest.mark.asyncio
async def test_recalculate_shifts_positions_without_duplicates(
    db_session, make_appointment, doctor_id
) -> None:
    await make_appointment(at(10, 0), doctor_id)
    await make_appointment(at(11, 0), doctor_id)
    service = QueueService(db_session)
    await service.recalculate(doctor_id, DAY)

    # Every existing position moves down by one
    await make_appointment(at(9, 0), doctor_id)
    result = await service.recalculate(doctor_id, DAY)

    assert result.updated_count == 3
    assert [r.queue_position for r in await _rows(db_session, doctor_id)] == [1, 2, 3]


@pytest.mark.asyncio
async def test_recalculate_clears_fields_of_inactive_rows(
    db_session, make_appointment, doctor_id
) -> None:
    await make_appointment(at(9, 0), doctor_id)
    await make_appointment(
        at(9, 30),
        doctor_id,
        status="cancelled",
        queue_position=2,
        estimated_start_at=at(9, 30),
        delay_minutes=0,
    )

    result = await QueueService(db_session).recalculate(doctor_id, DAY)

    assert result.cleared_count == 1
    active, cancelled = await _rows(db_session, doctor_id)
    assert active.queue_position == 1
    assert cancelled.queue_position is None
    assert cancelled.estimated_start_at is None
    assert cancelled.delay_minutes is None


@pytest.mark.asyncio
async def test_recalculate_scoped_to_doctor_and_day(db_session, make_appointment, doctor_id) -> None:
    other_doctor = uuid4()
    await make_appointment(at(9, 0), doctor_id)
    await make_appointment(at(9, 0), other_doctor)
    await make_appointment(at(9, 0, day=DAY + timedelta(days=1)), doctor_id)

    result = await QueueService(db_session).recalculate(doctor_id, DAY)

    assert result.active_count == 1
    assert (await _rows(db_session, other_doctor))[0].queue_position is None


@pytest.mark.asyncio
async def test_empty_day_is_a_no_op(db_session, doctor_id) -> None:
    result = await QueueService(db_session).recalculate(doctor_id, DAY)

    assert result.active_count == 0
    assert result.updated_count == 0
    assert result.last_estimated_end_at is None


@pytest.mark.asyncio
async def test_get_queue_snapshot(db_session, make_appointment, doctor_id) -> None:
    await make_appointment(at(9, 0), doctor_id, status="checked_in")
    await make_appointment(at(9, 15), doctor_id)
    await make_appointment(at(8, 0), doctor_id, status="completed")
    service = QueueService(db_session)
    await service.recalculate(doctor_id, DAY)

    snapshot = await service.get_queue(doctor_id, DAY)

    assert snapshot.queue_length == 2
    assert [e.queue_position for e in snapshot.entries] == [1, 2]
    assert snapshot.entries[0].checked_in is True
    assert snapshot.entries[1].estimated_start_at == at(9, 30)
    assert snapshot.estimated_completion_at == at(10, 0)


@pytest.mark.asyncio
async def test_row_cancelled_mid_recalculation_aborts_batch(
    db_session, session_factory, make_appointment, doctor_id, monkeypatch
) -> None:
    await make_appointment(at(9, 0), doctor_id)
    cancelled_id = await make_appointment(at(9, 30), doctor_id)
    read_day = QueueService._day_rows

    async def read_then_cancel(self, *args):
        rows = await read_day(self, *args)
        async with session_factory() as other:
            await other.execute(
                update(appointments)
                .where(appointments.c.id == cancelled_id)
                .values(status="cancelled")
            )
            await other.commit()
        return rows

    monkeypatch.setattr(QueueService, "_day_rows", read_then_cancel)
    with pytest.raises(TransientStoreError):
        await QueueService(db_session).recalculate(doctor_id, DAY)
    monkeypatch.undo()

    active, cancelled = await _rows(db_session, doctor_id)
    assert cancelled.status == "cancelled"
    assert cancelled.queue_position is None
    assert cancelled.estimated_start_at is None
    assert active.queue_position is None

    result = await QueueService(db_session).recalculate(doctor_id, DAY)
    assert result.active_count == 1
    assert (await _rows(db_session, doctor_id))[0].queue_position == 1


def fail_second_slot_write(monkeypatch) -> list[UUID]:
    """Make the second slot UPDATE of every later write-back raise a driver error."""
    original = QueueSlot.values
    written: list[UUID] = []

    def values(slot):
        written.append(slot.appointment_id)
        if len(written) == 2:
            raise OperationalError("UPDATE appointments", {}, Exception("disk I/O error"))
        return original.fget(slot)

    monkeypatch.setattr(QueueSlot, "values", property(values))
    return written


@pytest.mark.asyncio
async def test_failed_slot_write_leaves_queue_untouched(
    db_session, make_appointment, doctor_id, monkeypatch
) -> None:
    await make_appointment(at(10, 0), doctor_id)
    await make_appointment(at(11, 0), doctor_id)
    await QueueService(db_session).recalculate(doctor_id, DAY)
    await make_appointment(at(9, 0), doctor_id)
    before = [
        (r.id, r.queue_position, r.estimated_start_at, r.delay_minutes)
        for r in await _rows(db_session, doctor_id)
    ]

    written = fail_second_slot_write(monkeypatch)
    with pytest.raises(TransientStoreError):
        await QueueService(db_session).recalculate(doctor_id, DAY)

    after = [
        (r.id, r.queue_position, r.estimated_start_at, r.delay_minutes)
        for r in await _rows(db_session, doctor_id)
    ]
    assert len(written) == 2
    assert after == before
    assert [position for _, position, _, _ in after] == [None, 1, 2]


@pytest.mark.asyncio
async def test_failed_write_back_job_is_retried(
    job_queue, drain, db_session, make_appointment, doctor_id, monkeypatch
) -> None:
    await make_appointment(at(9, 0), doctor_id)
    await make_appointment(at(9, 30), doctor_id)
    fail_second_slot_write(monkeypatch)

    job_id = await job_queue.enqueue(
        JobType.RECALCULATE_QUEUE,
        {"doctor_id": str(doctor_id), "service_day": DAY.isoformat()},
    )
    result = await job_queue.dispatch_cycle()

    assert result.retried == 1
    job = await job_queue.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    assert job.error_message.startswith("TransientStoreError: Queue write-back failed")
    assert [r.queue_position for r in await _rows(db_session, doctor_id)] == [None, None]

    await drain()

    assert (await job_queue.get_job(job_id)).status == JobStatus.COMPLETED
    assert [r.queue_position for r in await _rows(db_session, doctor_id)] == [1, 2]
