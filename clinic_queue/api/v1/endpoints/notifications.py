"""Notification endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from clinic_queue.dependencies import DatabaseSession, Jobs
from clinic_queue.schemas.notifications import (
    NotificationCreate,
    NotificationResponse,
    NotificationStats,
)
from clinic_queue.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.post(
    "/",
    response_model=NotificationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue notification",
)
async def notify(
    data: NotificationCreate,
    db: DatabaseSession,
    job_queue: Jobs,
) -> NotificationResponse:
    """
    Create a pending notification and queue its delivery.

    A repeated ``event_key`` returns the existing notification.
    """
    return await NotificationService.notify(db, job_queue, data)


@router.get(
    "/stats",
    response_model=NotificationStats,
    summary="Delivery counts",
)
async def notification_stats(db: DatabaseSession) -> NotificationStats:
    return await NotificationService.notification_stats(db)


@router.get(
    "/{notification_id}",
    response_model=NotificationResponse,
    summary="Get notification",
)
async def get_notification(notification_id: UUID, db: DatabaseSession) -> NotificationResponse:
    return await NotificationService.get_notification(db, notification_id)
