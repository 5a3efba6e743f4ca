"""Notification dispatcher.

Records are created pending and delivered by ``send_notification`` jobs, so a
delivery failure never touches the appointment transition that requested it.
"""

import asyncio
from typing import Any, Protocol
from uuid import UUID, uuid4

import structlog
from firebase_admin import messaging
from firebase_admin.exceptions import FirebaseError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_queue.config import settings
from clinic_queue.core.clock import utcnow
from clinic_queue.core.exceptions import DeliveryError, NotFoundException, ValidationException
from clinic_queue.core.firebase import get_firebase_app
from clinic_queue.core.metrics import NOTIFICATION_DELIVERIES
from clinic_queue.models.notifications import notifications
from clinic_queue.schemas.jobs import JobType, SendNotificationPayload
from clinic_queue.schemas.notifications import (
    DELIVERY_JOB_PRIORITY,
    NotificationCreate,
    NotificationPriority,
    NotificationResponse,
    NotificationStats,
    NotificationStatus,
    NotificationType,
)
from clinic_queue.services.job_queue import JobQueue, parse_payload

logger = structlog.get_logger(__name__)


class NotificationChannel(Protocol):
    """Transport that delivers one notification or raises DeliveryError."""

    name: str

    async def send(self, payload: SendNotificationPayload) -> None: ...


class FirebaseTopicChannel:
    """Push delivery through FCM to the recipient's ``user-<id>`` topic."""

    name = "fcm"

    @staticmethod
    def topic_for(recipient_id: UUID) -> str:
        """FCM topic a recipient's devices subscribe to."""
        return f"user-{recipient_id}"

    async def send(self, payload: SendNotificationPayload) -> None:
        message = messaging.Message(
            notification=messaging.Notification(title=payload.title, body=payload.message),
            data={
                "type": payload.type,
                "notification_id": str(payload.notification_id),
                "priority": payload.priority,
            },
            topic=self.topic_for(payload.recipient_id),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(aps=messaging.Aps(sound="default")),
            ),
            android=messaging.AndroidConfig(
                priority="high" if payload.priority in ("high", "urgent") else "normal",
            ),
        )
        try:
            # The Admin SDK is blocking
            message_id = await asyncio.to_thread(messaging.send, message, app=get_firebase_app())
        except (FirebaseError, ValueError) as e:
            raise DeliveryError(f"FCM delivery failed: {e}") from e

        logger.info(
            "push_notification_sent",
            notification_id=str(payload.notification_id),
            message_id=message_id,
        )


class LogChannel:
    """Development channel that only writes the notification to the log."""

    name = "log"

    async def send(self, payload: SendNotificationPayload) -> None:
        logger.info(
            "notification_delivered",
            notification_id=str(payload.notification_id),
            recipient_id=str(payload.recipient_id),
            type=payload.type,
            title=payload.title,
        )


def build_channel(name: str | None = None) -> NotificationChannel:
    """Create the delivery channel named by ``NOTIFICATION_CHANNEL``."""
    name = (name or settings.notification_channel).lower()
    if name == "fcm":
        return FirebaseTopicChannel()
    if name == "log":
        return LogChannel()
    raise ValueError(f"Unknown notification channel '{name}'")


class NotificationService:
    """Service for creating and delivering notifications."""

    @staticmethod
    async def _by_event_key(db: AsyncSession, event_key: str) -> Any:
        result = await db.execute(select(notifications).where(notifications.c.event_key == event_key))
        return result.fetchone()

    @staticmethod
    async def notify(
        db: AsyncSession,
        job_queue: JobQueue,
        data: NotificationCreate,
        *,
        commit: bool = True,
    ) -> NotificationResponse:
        """
        Create a pending notification and queue its delivery.

        At most one record exists per ``event_key``: a repeated call returns
        the existing record without queueing another delivery.

        Args:
            db: Database session
            job_queue: Queue receiving the delivery job
            data: Notification content
            commit: Commit here; pass False to join the caller's transaction

        Returns:
            The pending (or previously created) notification
        """
        if data.event_key:
            existing = await NotificationService._by_event_key(db, data.event_key)
            if existing is not None:
                logger.debug("notification_already_created", event_key=data.event_key)
                return NotificationResponse.model_validate(dict(existing._mapping))

        notification_id = uuid4()
        now = utcnow()
        await db.execute(
            notifications.insert().values(
                id=notification_id,
                notification_type=data.notification_type.value,
                recipient_id=data.recipient_id,
                title=data.title,
                message=data.message,
                priority=data.priority.value,
                status=NotificationStatus.PENDING.value,
                event_key=data.event_key,
                created_at=now,
                updated_at=now,
            )
        )

        job_id = await job_queue.enqueue(
            JobType.SEND_NOTIFICATION,
            {
                "notification_id": str(notification_id),
                "recipient_id": str(data.recipient_id),
                "type": data.notification_type.value,
                "title": data.title,
                "message": data.message,
                "priority": data.priority.value,
            },
            priority=DELIVERY_JOB_PRIORITY[data.priority],
            session=db,
        )
        await db.execute(
            update(notifications).where(notifications.c.id == notification_id).values(job_id=job_id)
        )

        if commit:
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race on the same event key
                await db.rollback()
                existing = await NotificationService._by_event_key(db, data.event_key or "")
                if existing is None:
                    raise
                return NotificationResponse.model_validate(dict(existing._mapping))

        logger.info(
            "notification_queued",
            notification_id=str(notification_id),
            job_id=str(job_id),
            type=data.notification_type.value,
            recipient_id=str(data.recipient_id),
        )

        return NotificationResponse(
            id=notification_id,
            notification_type=data.notification_type,
            recipient_id=data.recipient_id,
            title=data.title,
            message=data.message,
            priority=data.priority,
            status=NotificationStatus.PENDING,
            event_key=data.event_key,
            job_id=job_id,
            created_at=now,
        )

    @staticmethod
    async def deliver(
        db: AsyncSession,
        payload: dict[str, Any],
        channel: NotificationChannel,
    ) -> None:
        """
        Deliver one notification; the ``send_notification`` job handler.

        Raises:
            NotFoundException: If the record no longer exists
            DeliveryError: If the channel fails
        """
        data = parse_payload(JobType.SEND_NOTIFICATION, payload)
        row = (
            await db.execute(select(notifications).where(notifications.c.id == data.notification_id))
        ).fetchone()
        if row is None:
            raise NotFoundException(f"Notification {data.notification_id} not found")
        if row.status == NotificationStatus.SENT.value:
            # Redelivered job after a crash between send and bookkeeping
            logger.info("notification_already_sent", notification_id=str(row.id))
            return

        try:
            await channel.send(data)
        except DeliveryError:
            NOTIFICATION_DELIVERIES.labels(channel=channel.name, result="failed").inc()
            raise

        now = utcnow()
        await db.execute(
            update(notifications)
            .where(notifications.c.id == row.id)
            .values(status=NotificationStatus.SENT.value, sent_at=now, updated_at=now)
        )
        await db.commit()
        NOTIFICATION_DELIVERIES.labels(channel=channel.name, result="sent").inc()

    @staticmethod
    async def mark_failed(db: AsyncSession, payload: dict[str, Any], reason: str) -> None:
        """Mark a notification permanently failed once its delivery job gave up."""
        await db.execute(
            update(notifications)
            .where(
                notifications.c.id == UUID(str(payload["notification_id"])),
                notifications.c.status == NotificationStatus.PENDING.value,
            )
            .values(
                status=NotificationStatus.FAILED.value,
                failure_reason=reason,
                updated_at=utcnow(),
            )
        )
        await db.commit()
        logger.warning(
            "notification_failed",
            notification_id=str(payload["notification_id"]),
            reason=reason,
        )

    @staticmethod
    async def get_notification(db: AsyncSession, notification_id: UUID) -> NotificationResponse:
        """
        Get notification by ID.

        Raises:
            NotFoundException: If the notification does not exist
        """
        result = await db.execute(select(notifications).where(notifications.c.id == notification_id))
        row = result.fetchone()
        if row is None:
            raise NotFoundException("Notification not found")
        return NotificationResponse.model_validate(dict(row._mapping))

    @staticmethod
    async def notification_stats(db: AsyncSession) -> NotificationStats:
        """Pending, sent and failed counts for operator follow-up."""
        result = await db.execute(
            select(
                notifications.c.status,
                notifications.c.notification_type,
                func.count(),
            ).group_by(notifications.c.status, notifications.c.notification_type)
        )

        by_status = {status.value: 0 for status in NotificationStatus}
        by_type = {notification_type.value: 0 for notification_type in NotificationType}
        for status, notification_type, count in result.fetchall():
            by_status[status] = by_status.get(status, 0) + count
            by_type[notification_type] = by_type.get(notification_type, 0) + count

        return NotificationStats(
            total=sum(by_status.values()),
            pending=by_status[NotificationStatus.PENDING.value],
            sent=by_status[NotificationStatus.SENT.value],
            failed=by_status[NotificationStatus.FAILED.value],
            by_type=by_type,
        )


def appointment_notification(
    recipient_id: UUID | None,
    title: str,
    message: str,
    event_key: str,
    priority: NotificationPriority = NotificationPriority.NORMAL,
) -> NotificationCreate:
    """Build the notification for a user-visible appointment event."""
    if recipient_id is None:
        raise ValidationException("Notification recipient is required")
    return NotificationCreate(
        notification_type=NotificationType.APPOINTMENT,
        recipient_id=recipient_id,
        title=title,
        message=message,
        priority=priority,
        event_key=event_key,
    )
