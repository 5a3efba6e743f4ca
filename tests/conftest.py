import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

# Load environment variables from .env file
load_dotenv()

from clinic_queue.core.clock import service_day_for
from clinic_queue.core.exceptions import DeliveryError
from clinic_queue.core.locks import LocalKeyLock
from clinic_queue.database import get_db
from clinic_queue.main import app
from clinic_queue.models import appointments, metadata
from clinic_queue.schemas.jobs import DispatchResult, SendNotificationPayload
from clinic_queue.services.job_queue import JobQueue
from clinic_queue.services.worker import build_job_queue, get_job_queue

# Any async SQLAlchemy URL; a throwaway SQLite file per test when unset.
# Never point this at a database holding real data: tables are dropped.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

DAY = date(2026, 3, 2)


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    """Aware UTC datetime on the test service day."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=UTC)


class RecordingChannel:
    """Notification channel double that can be told to fail."""

    name = "test"

    def __init__(self) -> None:
        self.sent: list[SendNotificationPayload] = []
        self.failures_left = 0

    def fail_always(self) -> None:
        self.failures_left = 10**6

    async def send(self, payload: SendNotificationPayload) -> None:
        if self.failures_left > 0:
            self.failures_left -= 1
            raise DeliveryError("channel down")
        self.sent.append(payload)


@pytest_asyncio.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Engine on a fresh schema."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'clinic_queue_test.db'}"
    connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
    engine = create_async_engine(url, poolclass=NullPool, connect_args=connect_args)

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def job_queue(
    session_factory: async_sessionmaker[AsyncSession],
    channel: RecordingChannel,
) -> JobQueue:
    """Job queue wired with the real handlers, short backoff and a test channel."""
    return build_job_queue(
        session_factory,
        key_lock=LocalKeyLock(acquire_timeout=5),
        channel=channel,
        max_retries=3,
        backoff_base_seconds=1,
        backoff_max_seconds=10,
        handler_timeout=5,
    )


@pytest.fixture
def drain(job_queue: JobQueue) -> Callable[..., Awaitable[DispatchResult]]:
    """Run dispatch cycles until nothing is due, jumping past retry backoff."""

    async def run(max_cycles: int = 20, skip_backoff: bool = True) -> DispatchResult:
        total = DispatchResult()
        for _ in range(max_cycles):
            now = datetime.now(UTC) + (timedelta(hours=1) if skip_backoff else timedelta(0))
            result = await job_queue.dispatch_cycle(now=now)
            if not result.claimed:
                break
            total.claimed += result.claimed
            total.completed += result.completed
            total.retried += result.retried
            total.failed += result.failed
            total.errored += result.errored
        return total

    return run


@pytest.fixture
def make_appointment(
    db_session: AsyncSession,
) -> Callable[..., Awaitable[UUID]]:
    """Insert an appointment row directly, bypassing the lifecycle service."""

    async def create(
        scheduled_at: datetime,
        doctor_id: UUID,
        duration_minutes: int = 30,
        status: str = "scheduled",
        **values: Any,
    ) -> UUID:
        appointment_id = values.pop("id", None) or uuid4()
        await db_session.execute(
            appointments.insert().values(
                id=appointment_id,
                doctor_id=doctor_id,
                patient_id=values.pop("patient_id", None) or uuid4(),
                scheduled_at=scheduled_at,
                service_day=service_day_for(scheduled_at),
                duration_minutes=duration_minutes,
                status=status,
                checked_in=values.pop("checked_in", status in ("checked_in", "in_progress")),
                **values,
            )
        )
        await db_session.commit()
        return appointment_id

    return create


@pytest.fixture
def doctor_id() -> UUID:
    return uuid4()


@pytest.fixture
def patient_id() -> UUID:
    return uuid4()


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    job_queue: JobQueue,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_queue] = lambda: job_queue

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
