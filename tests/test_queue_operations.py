"""Tests for emergency insertion, doctor delays and the no-show sweep."""

from datetime import timedelta
from uuid import uuid4

import pytest

from clinic_queue.core.clock import utcnow
from clinic_queue.schemas.jobs import JobStatus
from clinic_queue.services.appointment_service import AppointmentService
from clinic_queue.services.queue_service import QueueInput, compute_queue
from tests.conftest import DAY, at
from tests.test_appointments import BASE, parse, queue_snapshot
from tests.test_queue_recalculation import item


def test_waiting_emergency_goes_behind_consultation_in_progress() -> None:
    in_room = item(9, 0, "in_progress", actual_start_at=at(9, 0))
    waiting = item(9, 15)
    late_emergency = item(9, 40, emergency=True)
    early_emergency = item(9, 20, duration=10, emergency=True)

    slots = compute_queue([waiting, late_emergency, in_room, early_emergency])

    assert [s.appointment_id for s in slots] == [
        in_room.appointment_id,
        early_emergency.appointment_id,
        late_emergency.appointment_id,
        waiting.appointment_id,
    ]
    assert [s.estimated_start_at for s in slots] == [at(9, 0), at(9, 30), at(9, 40), at(10, 10)]
    assert slots[-1].delay_minutes == 55


def test_no_emergency_keeps_scheduled_order() -> None:
    items = [item(9, 30), item(9, 0, "checked_in"), item(10, 0)]

    slots = compute_queue(items)

    assert [s.estimated_start_at for s in slots] == [at(9, 0), at(9, 30), at(10, 0)]


def test_started_emergency_is_not_moved() -> None:
    first = item(8, 30)
    started = QueueInput(
        appointment_id=uuid4(),
        scheduled_at=at(9, 0),
        duration_minutes=30,
        status="in_progress",
        actual_start_at=at(9, 0),
        emergency=True,
    )

    slots = compute_queue([started, first])

    assert [s.appointment_id for s in slots] == [first.appointment_id, started.appointment_id]


@pytest.mark.asyncio
async def test_emergency_appointment_jumps_the_queue(
    client, drain, make_appointment, doctor_id
) -> None:
    in_room = await make_appointment(at(9, 0), doctor_id, status="in_progress", actual_start_at=at(9, 0))
    waiting = await make_appointment(at(9, 30), doctor_id)

    response = await client.post(
        f"{BASE}/emergency",
        json={
            "doctor_id": str(doctor_id),
            "patient_id": str(uuid4()),
            "scheduled_at": at(9, 10).isoformat(),
            "duration_minutes": 20,
            "reason": "Chest pain",
        },
    )
    assert response.status_code == 201, response.text
    created = response.json()
    assert created["emergency"] is True
    assert created["emergency_reason"] == "Chest pain"

    result = await drain()
    assert (result.claimed, result.completed) == (1, 1)

    snapshot = await queue_snapshot(client, doctor_id)
    entries = snapshot["entries"]
    assert [e["appointment_id"] for e in entries] == [str(in_room), created["id"], str(waiting)]
    assert [e["emergency"] for e in entries] == [False, True, False]
    assert [parse(e["estimated_start_at"]) for e in entries] == [at(9, 0), at(9, 30), at(9, 50)]
    assert [e["delay_minutes"] for e in entries] == [0, 20, 20]

    events = (await client.get(f"{BASE}/{created['id']}/events")).json()
    assert events[0]["event_type"] == "created"
    assert events[0]["new_values"]["emergency"] is True
    assert events[0]["metadata"] == {"reason": "Chest pain"}


@pytest.mark.asyncio
async def test_emergency_defaults_to_now(client, doctor_id) -> None:
    before = utcnow()

    response = await client.post(
        f"{BASE}/emergency",
        json={"doctor_id": str(doctor_id), "patient_id": str(uuid4())},
    )

    body = response.json()
    assert response.status_code == 201
    assert parse(body["scheduled_at"]) >= before - timedelta(seconds=1)
    assert body["emergency_reason"] == "Urgent attention required"


@pytest.mark.asyncio
async def test_doctor_delay_pushes_waiting_appointments(
    client, drain, channel, make_appointment, doctor_id
) -> None:
    await make_appointment(at(9, 0), doctor_id, status="in_progress", actual_start_at=at(9, 0))
    checked_in = await make_appointment(at(9, 30), doctor_id, status="checked_in")
    scheduled = await make_appointment(at(10, 0), doctor_id)
    await make_appointment(at(8, 0), doctor_id, status="completed")

    response = await client.post(
        f"/api/v1/queue/doctors/{doctor_id}/days/{DAY.isoformat()}/delay",
        json={"delay_minutes": 15},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["affected_count"] == 2
    assert body["appointment_ids"] == [str(checked_in), str(scheduled)]

    # One recalculation plus one notice per moved patient
    assert (await drain()).completed == 3
    assert [n.title for n in channel.sent] == ["Appointment Delayed"] * 2

    entries = (await queue_snapshot(client, doctor_id))["entries"]
    assert [parse(e["scheduled_at"]) for e in entries] == [at(9, 0), at(9, 45), at(10, 15)]
    assert [parse(e["estimated_start_at"]) for e in entries] == [at(9, 0), at(9, 45), at(10, 15)]

    events = (await client.get(f"{BASE}/{scheduled}/events")).json()
    assert events[-1]["event_type"] == "delayed"
    assert parse(events[-1]["old_values"]["scheduled_at"]) == at(10, 0)
    assert parse(events[-1]["new_values"]["scheduled_at"]) == at(10, 15)
    assert events[-1]["metadata"] == {"delay_minutes": 15}


@pytest.mark.asyncio
async def test_doctor_delay_without_notifications(
    client, drain, channel, make_appointment, doctor_id
) -> None:
    await make_appointment(at(9, 0), doctor_id)

    response = await client.post(
        f"/api/v1/queue/doctors/{doctor_id}/days/{DAY.isoformat()}/delay",
        json={"delay_minutes": 10, "notify_patients": False},
    )

    assert response.json()["affected_count"] == 1
    assert (await drain()).completed == 1
    assert channel.sent == []


@pytest.mark.asyncio
async def test_doctor_delay_validation(client, doctor_id) -> None:
    url = f"/api/v1/queue/doctors/{doctor_id}/days/{DAY.isoformat()}/delay"

    assert (await client.post(url, json={"delay_minutes": 0})).status_code == 422
    empty = await client.post(url, json={"delay_minutes": 5})
    assert empty.json()["affected_count"] == 0


@pytest.mark.asyncio
async def test_no_show_sweep(db_session, job_queue, drain, make_appointment, doctor_id) -> None:
    overdue = await make_appointment(at(9, 0), doctor_id, notes="Running late")
    within_grace = await make_appointment(at(9, 30), doctor_id)
    legacy_checked_in = await make_appointment(at(9, 0), doctor_id, checked_in=True)
    await make_appointment(at(8, 0), doctor_id, status="checked_in")
    await make_appointment(at(7, 0), doctor_id, status="completed")
    service = AppointmentService(db_session, job_queue)

    result = await service.mark_overdue_no_shows(now=at(9, 45))

    assert result.cutoff == at(9, 25)
    assert result.appointment_ids == [overdue]
    marked = await service.get_appointment(overdue)
    assert marked.status == "no_show"
    assert marked.notes == (
        "Running late. Marked no-show: patient did not arrive within 20 minutes "
        "of the scheduled time"
    )
    assert (await service.get_appointment(within_grace)).status == "scheduled"
    assert (await service.get_appointment(legacy_checked_in)).status == "scheduled"

    events = await service.list_events(overdue)
    assert events[-1].event_type == "no_show"
    assert events[-1].metadata == {"automatic": True, "grace_minutes": 20}

    jobs = await job_queue.list_jobs(status=JobStatus.PENDING)
    assert jobs.total == 1
    assert jobs.items[0].payload["trigger"] == "no_show"

    await drain()
    assert (await service.get_appointment(overdue)).queue_position is None
    assert (await service.get_appointment(within_grace)).queue_position == 3

    again = await service.mark_overdue_no_shows(now=at(9, 45))
    assert again.marked_count == 0


@pytest.mark.asyncio
async def test_no_show_sweep_endpoint(client, make_appointment, doctor_id) -> None:
    now = utcnow()
    late = await make_appointment(now - timedelta(hours=1), doctor_id)
    await make_appointment(now - timedelta(minutes=5), doctor_id)

    response = await client.post(f"{BASE}/no-shows/sweep", params={"grace_minutes": 30})

    assert response.status_code == 200
    body = response.json()
    assert body["marked_count"] == 1
    assert body["appointment_ids"] == [str(late)]
