"""Change feed listener.

Appointment row mutations arrive from the data store and become
``recalculate_queue`` jobs. The callback only enqueues work; it never writes
appointment rows itself, so the job queue stays the single writer per
doctor and day.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import UUID

import asyncpg
import structlog

from clinic_queue.config import settings
from clinic_queue.schemas.jobs import JobType
from clinic_queue.services.job_queue import JobQueue
from clinic_queue.services.lifecycle import DEFAULT_RECALCULATION_PRIORITY

logger = structlog.get_logger(__name__)

# Columns written by recalculation; changes limited to these never re-trigger it
ENGINE_OWNED_COLUMNS = frozenset(
    {"queue_position", "estimated_start_at", "delay_minutes", "updated_at"}
)

Observer = Callable[["AppointmentChange"], Awaitable[None]]


@dataclass(frozen=True)
class AppointmentChange:
    """One insert, update or delete of an appointment row."""

    operation: str
    appointment_id: UUID
    doctor_id: UUID
    service_day: date
    old_doctor_id: UUID | None = None
    old_service_day: date | None = None
    changed_columns: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_payload(cls, payload: str | dict[str, Any]) -> "AppointmentChange":
        """Parse the JSON document sent by the ``appointments_notify_change`` trigger."""
        data = json.loads(payload) if isinstance(payload, str) else payload
        return cls(
            operation=data["op"].upper(),
            appointment_id=UUID(data["id"]),
            doctor_id=UUID(data["doctor_id"]),
            service_day=date.fromisoformat(data["service_day"]),
            old_doctor_id=UUID(data["old_doctor_id"]) if data.get("old_doctor_id") else None,
            old_service_day=(
                date.fromisoformat(data["old_service_day"]) if data.get("old_service_day") else None
            ),
            changed_columns=frozenset(data.get("changed") or ()),
        )

    @property
    def only_queue_fields(self) -> bool:
        """Whether this is an update that touched engine-owned columns only."""
        return (
            self.operation == "UPDATE"
            and bool(self.changed_columns)
            and self.changed_columns <= ENGINE_OWNED_COLUMNS
        )

    def affected_keys(self) -> set[tuple[UUID, date]]:
        """Doctor/day queues the change can perturb."""
        keys = {(self.doctor_id, self.service_day)}
        if self.old_doctor_id and self.old_service_day:
            keys.add((self.old_doctor_id, self.old_service_day))
        return keys


class ChangeFeedListener:
    """Turns appointment changes into recalculation jobs and fans them out to observers."""

    def __init__(self, job_queue: JobQueue, doctor_ids: set[UUID] | None = None):
        """
        Initialize listener.

        Args:
            job_queue: Queue receiving recalculation jobs
            doctor_ids: Doctors to watch; all doctors when None
        """
        self.job_queue = job_queue
        self.doctor_ids = set(doctor_ids) if doctor_ids else None
        self._observers: list[Observer] = []

    def watch(self, doctor_id: UUID) -> None:
        """
        Add a doctor to the watched set.

        A listener created without ``doctor_ids`` watches every doctor; the
        first call narrows it to the doctors passed here.
        """
        if self.doctor_ids is None:
            self.doctor_ids = set()
        self.doctor_ids.add(doctor_id)

    def add_observer(self, observer: Observer) -> None:
        """Register a coroutine called with every accepted change."""
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        """Unregister an observer; raises ValueError if it was never added."""
        self._observers.remove(observer)

    def _watches(self, change: AppointmentChange) -> bool:
        if self.doctor_ids is None:
            return True
        return change.doctor_id in self.doctor_ids or change.old_doctor_id in self.doctor_ids

    async def handle_change(self, change: AppointmentChange) -> list[UUID]:
        """
        React to one appointment change.

        Returns:
            IDs of the recalculation jobs created or coalesced into
        """
        if not self._watches(change):
            return []

        job_ids = []
        if not change.only_queue_fields:
            for doctor_id, service_day in sorted(change.affected_keys(), key=str):
                job_id = await self.job_queue.enqueue(
                    JobType.RECALCULATE_QUEUE,
                    {
                        "doctor_id": str(doctor_id),
                        "service_day": service_day.isoformat(),
                        "trigger": f"change_feed:{change.operation.lower()}",
                    },
                    priority=DEFAULT_RECALCULATION_PRIORITY,
                )
                job_ids.append(job_id)

        for observer in list(self._observers):
            try:
                await observer(change)
            except Exception as e:
                logger.error(
                    "change_observer_failed",
                    appointment_id=str(change.appointment_id),
                    error=str(e),
                )

        logger.debug(
            "appointment_change_handled",
            appointment_id=str(change.appointment_id),
            operation=change.operation,
            jobs=len(job_ids),
        )
        return job_ids


def _asyncpg_dsn(url: str) -> str:
    return url.replace("postgresql+asyncpg://", "postgresql://", 1)


class PostgresChangeFeed:
    """LISTEN on the Postgres channel fed by the appointments trigger."""

    def __init__(
        self,
        listener: ChangeFeedListener,
        dsn: str | None = None,
        channel: str | None = None,
    ):
        self.listener = listener
        self.dsn = _asyncpg_dsn(dsn or settings.database_url)
        self.channel = channel or settings.change_feed_channel
        self._connection: asyncpg.Connection | None = None
        self._payloads: asyncio.Queue[str] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        self._payloads.put_nowait(payload)

    async def start(self) -> None:
        """Connect, subscribe and start handing changes to the listener."""
        self._connection = await asyncpg.connect(self.dsn)
        await self._connection.add_listener(self.channel, self._on_notify)
        self._consumer = asyncio.create_task(self._consume())
        logger.info("change_feed_started", channel=self.channel)

    async def _consume(self) -> None:
        while True:
            payload = await self._payloads.get()
            try:
                await self.listener.handle_change(AppointmentChange.from_payload(payload))
            except Exception as e:
                logger.error("change_feed_payload_failed", error=str(e), payload=payload)
            finally:
                self._payloads.task_done()

    async def stop(self) -> None:
        """Unsubscribe and close the connection."""
        if self._connection is not None:
            await self._connection.remove_listener(self.channel, self._on_notify)
            await self._connection.close()
            self._connection = None
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        logger.info("change_feed_stopped", channel=self.channel)
