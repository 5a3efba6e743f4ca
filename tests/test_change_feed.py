"""Tests for the appointment change feed."""

import asyncio
import json
from datetime import timedelta
from uuid import uuid4

import pytest

from clinic_queue.schemas.jobs import JobStatus
from clinic_queue.services.change_feed import (
    AppointmentChange,
    ChangeFeedListener,
    PostgresChangeFeed,
)
from tests.conftest import DAY


def change_payload(doctor_id, **overrides) -> dict:
    payload = {
        "op": "update",
        "id": str(uuid4()),
        "doctor_id": str(doctor_id),
        "service_day": DAY.isoformat(),
        "changed": ["status", "updated_at"],
    }
    payload.update(overrides)
    return payload


def test_parse_trigger_payload() -> None:
    doctor_id, old_doctor_id = uuid4(), uuid4()
    raw = json.dumps(
        change_payload(
            doctor_id,
            old_doctor_id=str(old_doctor_id),
            old_service_day=(DAY - timedelta(days=1)).isoformat(),
        )
    )

    change = AppointmentChange.from_payload(raw)

    assert change.operation == "UPDATE"
    assert change.doctor_id == doctor_id
    assert change.service_day == DAY
    assert change.changed_columns == frozenset({"status", "updated_at"})
    assert change.affected_keys() == {
        (doctor_id, DAY),
        (old_doctor_id, DAY - timedelta(days=1)),
    }


def test_engine_owned_updates_are_recognized() -> None:
    doctor_id = uuid4()

    queue_only = AppointmentChange.from_payload(
        change_payload(doctor_id, changed=["queue_position", "delay_minutes", "updated_at"])
    )
    status_change = AppointmentChange.from_payload(change_payload(doctor_id))
    insert = AppointmentChange.from_payload(change_payload(doctor_id, op="INSERT", changed=None))

    assert queue_only.only_queue_fields
    assert not status_change.only_queue_fields
    assert not insert.only_queue_fields


@pytest.mark.asyncio
async def test_change_enqueues_recalculation(job_queue, doctor_id) -> None:
    listener = ChangeFeedListener(job_queue)

    job_ids = await listener.handle_change(
        AppointmentChange.from_payload(change_payload(doctor_id, op="INSERT"))
    )

    assert len(job_ids) == 1
    job = await job_queue.get_job(job_ids[0])
    assert job.status == JobStatus.PENDING
    assert job.payload["doctor_id"] == str(doctor_id)
    assert job.payload["trigger"] == "change_feed:insert"


@pytest.mark.asyncio
async def test_queue_field_writes_do_not_retrigger(job_queue, doctor_id) -> None:
    seen = []

    async def observe(change):
        seen.append(change)

    listener = ChangeFeedListener(job_queue)
    listener.add_observer(observe)
    change = AppointmentChange.from_payload(
        change_payload(doctor_id, changed=["queue_position", "estimated_start_at", "updated_at"])
    )

    job_ids = await listener.handle_change(change)

    assert job_ids == []
    assert (await job_queue.job_stats()).total == 0
    # Subscribers still see the new positions
    assert seen == [change]


@pytest.mark.asyncio
async def test_moved_appointment_recalculates_both_queues(job_queue, doctor_id) -> None:
    listener = ChangeFeedListener(job_queue)
    change = AppointmentChange.from_payload(
        change_payload(
            doctor_id,
            changed=["service_day", "scheduled_at"],
            old_doctor_id=str(doctor_id),
            old_service_day=(DAY - timedelta(days=1)).isoformat(),
        )
    )

    job_ids = await listener.handle_change(change)

    assert len(set(job_ids)) == 2


@pytest.mark.asyncio
async def test_repeated_changes_coalesce(job_queue, doctor_id) -> None:
    listener = ChangeFeedListener(job_queue)

    first = await listener.handle_change(AppointmentChange.from_payload(change_payload(doctor_id)))
    second = await listener.handle_change(AppointmentChange.from_payload(change_payload(doctor_id)))

    assert first == second


@pytest.mark.asyncio
async def test_unwatched_doctors_are_ignored(job_queue, doctor_id) -> None:
    listener = ChangeFeedListener(job_queue, doctor_ids={uuid4()})
    change = AppointmentChange.from_payload(change_payload(doctor_id))

    assert await listener.handle_change(change) == []

    listener.watch(doctor_id)
    assert len(await listener.handle_change(change)) == 1


@pytest.mark.asyncio
async def test_failing_observer_does_not_stop_others(job_queue, doctor_id) -> None:
    seen = []

    async def broken(change):
        raise RuntimeError("subscriber gone")

    async def observe(change):
        seen.append(change.appointment_id)

    listener = ChangeFeedListener(job_queue)
    listener.add_observer(broken)
    listener.add_observer(observe)
    change = AppointmentChange.from_payload(change_payload(doctor_id))

    job_ids = await listener.handle_change(change)

    assert len(job_ids) == 1
    assert seen == [change.appointment_id]

    listener.remove_observer(observe)
    await listener.handle_change(change)
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_postgres_feed_hands_payloads_to_listener(job_queue, doctor_id) -> None:
    listener = ChangeFeedListener(job_queue)
    feed = PostgresChangeFeed(listener, dsn="postgresql+asyncpg://localhost/clinic_queue")
    assert feed.dsn == "postgresql://localhost/clinic_queue"

    feed._consumer = asyncio.create_task(feed._consume())
    feed._on_notify(None, 1, feed.channel, "not json")
    feed._on_notify(None, 1, feed.channel, json.dumps(change_payload(doctor_id)))
    await asyncio.wait_for(feed._payloads.join(), timeout=5)
    await feed.stop()

    # The malformed payload is logged and skipped
    assert (await job_queue.job_stats()).by_status["pending"] == 1
