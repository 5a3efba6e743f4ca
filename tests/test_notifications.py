"""Tests for notification creation, delivery and failure handling."""

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from clinic_queue.models import appointments, jobs, notifications
from clinic_queue.schemas.jobs import JobStatus, JobType
from clinic_queue.schemas.notifications import (
    NotificationCreate,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from clinic_queue.services.notification_service import (
    FirebaseTopicChannel,
    LogChannel,
    NotificationService,
    appointment_notification,
    build_channel,
)
from tests.conftest import at


def reminder(**overrides) -> NotificationCreate:
    values = {
        "notification_type": NotificationType.APPOINTMENT,
        "recipient_id": uuid4(),
        "title": "Appointment Reminder",
        "message": "Your appointment starts in 30 minutes",
    }
    values.update(overrides)
    return NotificationCreate(**values)


@pytest.mark.asyncio
async def test_notify_creates_pending_record_and_delivery_job(db_session, job_queue) -> None:
    notification = await NotificationService.notify(
        db_session, job_queue, reminder(priority=NotificationPriority.URGENT)
    )

    assert notification.status == NotificationStatus.PENDING
    job = await job_queue.get_job(notification.job_id)
    assert job.job_type == JobType.SEND_NOTIFICATION
    assert job.status == JobStatus.PENDING
    assert job.priority == 1
    assert job.payload["notification_id"] == str(notification.id)
    assert job.lock_key is None


@pytest.mark.asyncio
async def test_event_key_creates_at_most_one_record(db_session, job_queue) -> None:
    data = reminder(event_key="appointment:abc:created")

    first = await NotificationService.notify(db_session, job_queue, data)
    second = await NotificationService.notify(db_session, job_queue, data)

    assert second.id == first.id
    count = await db_session.scalar(select(func.count()).select_from(notifications))
    job_count = await db_session.scalar(select(func.count()).select_from(jobs))
    assert (count, job_count) == (1, 1)


@pytest.mark.asyncio
async def test_delivery_marks_notification_sent(db_session, job_queue, drain, channel) -> None:
    notification = await NotificationService.notify(db_session, job_queue, reminder())

    result = await drain()

    assert result.completed == 1
    assert [payload.notification_id for payload in channel.sent] == [notification.id]
    stored = await NotificationService.get_notification(db_session, notification.id)
    assert stored.status == NotificationStatus.SENT
    assert stored.sent_at is not None


@pytest.mark.asyncio
async def test_delivery_retries_after_channel_failure(db_session, job_queue, drain, channel) -> None:
    channel.failures_left = 1
    notification = await NotificationService.notify(db_session, job_queue, reminder())

    result = await drain()

    assert (result.retried, result.completed) == (1, 1)
    assert len(channel.sent) == 1
    job = await job_queue.get_job(notification.job_id)
    assert job.retry_count == 1
    stored = await NotificationService.get_notification(db_session, notification.id)
    assert stored.status == NotificationStatus.SENT


@pytest.mark.asyncio
async def test_delivery_gives_up_after_max_retries(
    db_session, job_queue, drain, channel, make_appointment, doctor_id
) -> None:
    appointment_id = await make_appointment(at(9, 0), doctor_id)
    channel.fail_always()
    notification = await NotificationService.notify(
        db_session,
        job_queue,
        appointment_notification(uuid4(), "Appointment Scheduled", "See you soon", "event-1"),
    )

    result = await drain()

    assert (result.claimed, result.retried, result.failed) == (3, 2, 1)
    job = await job_queue.get_job(notification.job_id)
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 3
    assert job.error_message == "DeliveryError: channel down"

    stored = await NotificationService.get_notification(db_session, notification.id)
    assert stored.status == NotificationStatus.FAILED
    assert stored.failure_reason == "DeliveryError: channel down"

    # Delivery failures never touch the appointment
    status = await db_session.scalar(
        select(appointments.c.status).where(appointments.c.id == appointment_id)
    )
    assert status == "scheduled"


@pytest.mark.asyncio
async def test_cancelling_delivery_job_fails_notification(db_session, job_queue, channel) -> None:
    notification = await NotificationService.notify(db_session, job_queue, reminder())

    await job_queue.cancel_job(notification.job_id)

    stored = await NotificationService.get_notification(db_session, notification.id)
    assert stored.status == NotificationStatus.FAILED
    assert stored.failure_reason == "Cancelled"
    assert channel.sent == []


@pytest.mark.asyncio
async def test_redelivered_job_does_not_send_twice(db_session, job_queue, drain, channel) -> None:
    notification = await NotificationService.notify(db_session, job_queue, reminder())
    await drain()
    job = await job_queue.get_job(notification.job_id)

    await NotificationService.deliver(db_session, job.payload, channel)

    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_notification_stats(db_session, job_queue, drain, channel) -> None:
    await NotificationService.notify(db_session, job_queue, reminder())
    await drain()
    await NotificationService.notify(
        db_session, job_queue, reminder(notification_type=NotificationType.SYSTEM)
    )

    stats = await NotificationService.notification_stats(db_session)

    assert (stats.total, stats.pending, stats.sent, stats.failed) == (2, 1, 1, 0)
    assert stats.by_type["appointment"] == 1
    assert stats.by_type["system"] == 1


@pytest.mark.asyncio
async def test_notification_api(client, drain) -> None:
    recipient_id = str(uuid4())
    response = await client.post(
        "/api/v1/notifications/",
        json={
            "notification_type": "system",
            "recipient_id": recipient_id,
            "title": "Clinic closing early",
            "message": "The clinic closes at 4 PM today",
            "priority": "high",
        },
    )

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"

    await drain()
    response = await client.get(f"/api/v1/notifications/{body['id']}")
    assert response.json()["status"] == "sent"

    response = await client.get(f"/api/v1/notifications/{uuid4()}")
    assert response.status_code == 404


def test_channels() -> None:
    recipient_id = uuid4()

    assert FirebaseTopicChannel.topic_for(recipient_id) == f"user-{recipient_id}"
    assert isinstance(build_channel("log"), LogChannel)
    assert isinstance(build_channel("FCM"), FirebaseTopicChannel)
    with pytest.raises(ValueError):
        build_channel("sms")
