"""Job worker loop and job queue wiring."""

import asyncio
import time
from datetime import date, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_queue.config import settings
from clinic_queue.core.locks import KeyLock, build_key_lock
from clinic_queue.database import AsyncSessionLocal
from clinic_queue.schemas.jobs import JobType
from clinic_queue.schemas.queue import RecalculationResult
from clinic_queue.services.job_queue import JobQueue, parse_payload
from clinic_queue.services.notification_service import (
    NotificationChannel,
    NotificationService,
    build_channel,
)
from clinic_queue.services.queue_service import QueueService

logger = structlog.get_logger(__name__)


async def recalculate_queue_handler(db: AsyncSession, payload: dict[str, Any]) -> RecalculationResult:
    """Handler of ``recalculate_queue`` jobs."""
    data = parse_payload(JobType.RECALCULATE_QUEUE, payload)
    return await QueueService(db).recalculate(
        doctor_id=data.doctor_id,
        service_day=data.service_day,
        start_from_position=data.start_from_position,
    )


def build_job_queue(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    key_lock: KeyLock | None = None,
    channel: NotificationChannel | None = None,
    **options: Any,
) -> JobQueue:
    """
    Create a job queue with every job type's handler registered.

    Args:
        session_factory: Session factory (defaults to the application's)
        key_lock: Per-key lock (defaults to the configured backend)
        channel: Notification channel (defaults to ``NOTIFICATION_CHANNEL``)
        **options: Queue tuning passed to ``JobQueue``

    Returns:
        Configured job queue
    """
    session_factory = session_factory or AsyncSessionLocal
    channel = channel or build_channel()

    async def send_notification_handler(db: AsyncSession, payload: dict[str, Any]) -> None:
        await NotificationService.deliver(db, payload, channel)

    queue = JobQueue(session_factory, key_lock or build_key_lock(), **options)
    queue.register(JobType.RECALCULATE_QUEUE, recalculate_queue_handler)
    queue.register(
        JobType.SEND_NOTIFICATION,
        send_notification_handler,
        on_failure=NotificationService.mark_failed,
    )
    return queue


_job_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    """Get the process-wide job queue, creating it on first use."""
    global _job_queue
    if _job_queue is None:
        _job_queue = build_job_queue()
    return _job_queue


class JobWorker:
    """Runs dispatch cycles until stopped."""

    def __init__(
        self,
        queue: JobQueue,
        poll_interval: float | None = None,
        stale_after: timedelta | None = None,
    ):
        self.queue = queue
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )
        self.stale_after = (
            stale_after
            if stale_after is not None
            else timedelta(seconds=settings.job_stale_after_seconds)
        )
        self._last_recovery: float | None = None
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def run(self) -> None:
        """
        Dispatch until ``stop`` is called.

        Jobs left running longer than ``stale_after`` are recovered at start
        and again every ``stale_after`` while the loop runs, so jobs orphaned
        by a failed cycle (store unreachable) or by a dead worker go back to
        pending without a restart.
        """
        logger.info(
            "job_worker_started",
            poll_interval=self.poll_interval,
            stale_after_seconds=self.stale_after.total_seconds(),
        )

        while not self._stopping.is_set():
            await self._recover_stale_if_due()
            claimed = 0
            try:
                result = await self.queue.dispatch_cycle()
                claimed = result.claimed
            except Exception as e:
                logger.error("dispatch_cycle_failed", error=str(e))

            if not claimed and not self._stopping.is_set():
                await self.queue.wait_for_work(self.poll_interval)

        logger.info("job_worker_stopped")

    async def _recover_stale_if_due(self) -> None:
        now = time.monotonic()
        if (
            self._last_recovery is not None
            and now - self._last_recovery < self.stale_after.total_seconds()
        ):
            return
        self._last_recovery = now
        try:
            await self.queue.requeue_stale_jobs(self.stale_after)
        except Exception as e:
            logger.error("stale_job_recovery_failed", error=str(e))

    def start(self) -> asyncio.Task:
        """Run the worker as a background task."""
        self._stopping.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """
        Stop after the current cycle.

        Running handlers are not interrupted; the cycle is bounded by the
        handler timeout.
        """
        self._stopping.set()
        self.queue.wake()
        if self._task is not None:
            await self._task
            self._task = None


async def recalculate_now(
    queue: JobQueue,
    doctor_id: UUID,
    service_day: date,
    priority: int = 1,
) -> UUID:
    """Enqueue an operator-requested recalculation."""
    return await queue.enqueue(
        JobType.RECALCULATE_QUEUE,
        {
            "doctor_id": str(doctor_id),
            "service_day": service_day.isoformat(),
            "trigger": "manual",
        },
        priority=priority,
    )
