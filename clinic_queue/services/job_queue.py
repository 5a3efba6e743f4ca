"""Durable, priority-ordered job queue with bounded retries.

Jobs are rows in the ``jobs`` table. Retry state lives on the row as plain
data (status, retry_count, scheduled_for, error_message), so a restarted
worker resumes where the previous one stopped.

Execution is at-least-once. A dispatch cycle claims due jobs by moving them
from pending to running, then runs them grouped by lock key: different keys
run concurrently, jobs sharing a key run one after another in enqueue order
under the per-key lock.

Cancellation is honored only while a job is pending. A running job cannot be
cancelled; it always runs to completed or failed, so a batch write is never
interrupted halfway.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_queue.config import settings
from clinic_queue.core.clock import as_utc, utcnow
from clinic_queue.core.exceptions import (
    AppException,
    ConflictException,
    NotFoundException,
    TransientStoreError,
    ValidationException,
)
from clinic_queue.core.locks import KeyLock, LocalKeyLock
from clinic_queue.core.metrics import JOB_DURATION, JOB_OUTCOMES, JOBS_ENQUEUED
from clinic_queue.models.jobs import jobs
from clinic_queue.schemas.jobs import (
    DispatchResult,
    JobListResponse,
    JobResponse,
    JobStats,
    JobStatus,
    JobType,
    RecalculateQueuePayload,
    SendNotificationPayload,
)

logger = structlog.get_logger(__name__)

Handler = Callable[[AsyncSession, dict[str, Any]], Awaitable[Any]]
FailureHook = Callable[[AsyncSession, dict[str, Any], str], Awaitable[None]]

PAYLOAD_SCHEMAS: dict[JobType, type[BaseModel]] = {
    JobType.RECALCULATE_QUEUE: RecalculateQueuePayload,
    JobType.SEND_NOTIFICATION: SendNotificationPayload,
}

DEFAULT_PRIORITY = 5


@dataclass
class JobDefinition:
    """Handler for a job type plus the hook run when a job of that type ends failed."""

    handler: Handler
    on_failure: FailureHook | None = None


def parse_payload(job_type: JobType | str, payload: dict[str, Any]) -> BaseModel:
    """
    Validate a payload against its job type's schema.

    Raises:
        ValidationException: If the payload does not match the schema
    """
    schema = PAYLOAD_SCHEMAS[JobType(job_type)]
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationException(f"Invalid {JobType(job_type).value} payload: {e}") from e


def backoff_delay(
    retry_count: int,
    base_seconds: float | None = None,
    max_seconds: float | None = None,
) -> timedelta:
    """
    Delay before the next attempt after ``retry_count`` failed attempts.

    Grows as ``base * 2 ** (retry_count - 1)`` and is capped at ``max_seconds``.
    """
    base = base_seconds if base_seconds is not None else settings.job_backoff_base_seconds
    cap = max_seconds if max_seconds is not None else settings.job_backoff_max_seconds
    exponent = max(retry_count - 1, 0)
    return timedelta(seconds=min(base * (2**exponent), cap))


def _describe(error: BaseException) -> str:
    if isinstance(error, AppException):
        return f"{type(error).__name__}: {error.message}"
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, AppException):
        return error.retryable
    # Unknown errors (driver, network, OS) are treated as transient
    return True


def _default(value: Any, fallback: Any) -> Any:
    return fallback if value is None else value


class JobQueue:
    """Job queue backed by the ``jobs`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        key_lock: KeyLock | None = None,
        *,
        max_retries: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        handler_timeout: float | None = None,
    ):
        """Initialize the queue; unset options fall back to settings."""
        self.session_factory = session_factory
        self.key_lock = key_lock if key_lock is not None else LocalKeyLock()
        self.max_retries = _default(max_retries, settings.job_max_retries)
        self.backoff_base_seconds = _default(backoff_base_seconds, settings.job_backoff_base_seconds)
        self.backoff_max_seconds = _default(backoff_max_seconds, settings.job_backoff_max_seconds)
        self.batch_size = _default(batch_size, settings.job_batch_size)
        self.concurrency = _default(concurrency, settings.worker_concurrency)
        self.handler_timeout = _default(handler_timeout, settings.job_handler_timeout_seconds)
        self._definitions: dict[JobType, JobDefinition] = {}
        self._wakeup = asyncio.Event()

    def register(
        self,
        job_type: JobType,
        handler: Handler,
        on_failure: FailureHook | None = None,
    ) -> None:
        """Register the handler executed for ``job_type``."""
        self._definitions[JobType(job_type)] = JobDefinition(handler, on_failure)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict[str, Any],
        priority: int = DEFAULT_PRIORITY,
        scheduled_for: datetime | None = None,
        *,
        max_retries: int | None = None,
        session: AsyncSession | None = None,
    ) -> UUID:
        """
        Create a pending job and return its id. Never executes the job.

        A pending recalculation for the same doctor and day absorbs the new
        request instead of creating a second job.

        Args:
            job_type: Type of job
            payload: Job payload, validated against the job type's schema
            priority: Lower runs first
            scheduled_for: Earliest execution time (defaults to now)
            max_retries: Attempts before the job fails (defaults to settings)
            session: Join the caller's transaction instead of committing here

        Returns:
            ID of the new or absorbing job

        Raises:
            ValidationException: If the payload is invalid
        """
        job_type = JobType(job_type)
        data = parse_payload(job_type, payload)

        if session is not None:
            job_id = await self._insert(session, job_type, data, priority, scheduled_for, max_retries)
        else:
            async with self.session_factory() as own_session:
                job_id = await self._insert(
                    own_session, job_type, data, priority, scheduled_for, max_retries
                )
                await own_session.commit()

        self._wakeup.set()
        return job_id

    async def _insert(
        self,
        session: AsyncSession,
        job_type: JobType,
        data: BaseModel,
        priority: int,
        scheduled_for: datetime | None,
        max_retries: int | None,
    ) -> UUID:
        now = utcnow()
        scheduled_for = as_utc(scheduled_for) or now
        payload = data.model_dump(mode="json", exclude_none=True)
        key = data.key if isinstance(data, RecalculateQueuePayload) else None

        if key is not None:
            existing = (
                await session.execute(
                    select(jobs)
                    .where(and_(jobs.c.dedupe_key == key, jobs.c.status == JobStatus.PENDING.value))
                    .order_by(jobs.c.created_at)
                    .limit(1)
                )
            ).fetchone()
            if existing is not None:
                merged = dict(existing.payload)
                merged["start_from_position"] = min(
                    existing.payload.get("start_from_position", 1),
                    payload.get("start_from_position", 1),
                )
                values = {
                    "priority": min(existing.priority, priority),
                    "scheduled_for": min(as_utc(existing.scheduled_for), scheduled_for),
                    "payload": merged,
                    "updated_at": now,
                }
                if existing.retry_count:
                    # A job waiting out its backoff gets a full retry budget for the new request
                    values.update(retry_count=0, error_message=None)
                await session.execute(
                    update(jobs)
                    .where(and_(jobs.c.id == existing.id, jobs.c.status == JobStatus.PENDING.value))
                    .values(**values)
                )
                JOBS_ENQUEUED.labels(job_type=job_type.value, coalesced="true").inc()
                logger.debug(
                    "job_coalesced",
                    job_id=str(existing.id),
                    key=key,
                    retries_reset=bool(existing.retry_count),
                )
                return existing.id

        job_id = uuid4()
        await session.execute(
            jobs.insert().values(
                id=job_id,
                job_type=job_type.value,
                status=JobStatus.PENDING.value,
                priority=priority,
                payload=payload,
                dedupe_key=key,
                lock_key=key,
                retry_count=0,
                max_retries=_default(max_retries, self.max_retries),
                created_at=now,
                scheduled_for=scheduled_for,
                updated_at=now,
            )
        )
        JOBS_ENQUEUED.labels(job_type=job_type.value, coalesced="false").inc()
        logger.info(
            "job_enqueued",
            job_id=str(job_id),
            job_type=job_type.value,
            priority=priority,
            scheduled_for=scheduled_for.isoformat(),
        )
        return job_id

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def wake(self) -> None:
        """Interrupt ``wait_for_work``."""
        self._wakeup.set()

    async def wait_for_work(self, timeout: float) -> None:
        """Sleep until work is enqueued in this process or ``timeout`` passes."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except TimeoutError:
            pass
        self._wakeup.clear()

    async def dispatch_cycle(self, now: datetime | None = None) -> DispatchResult:
        """
        Claim due jobs and execute them.

        Args:
            now: Reference time for due-ness (defaults to the current time)

        Returns:
            Counts of claimed, completed, retried and failed jobs
        """
        claimed = await self._claim_due(as_utc(now) or utcnow())
        result = DispatchResult(claimed=len(claimed))
        if not claimed:
            return result

        groups: dict[str, list[Any]] = {}
        for job in claimed:
            groups.setdefault(job.lock_key or f"job:{job.id}", []).append(job)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_group(group: list[Any]) -> list[JobStatus]:
            outcomes = []
            async with semaphore:
                for job in sorted(group, key=lambda j: (as_utc(j.created_at), str(j.id))):
                    outcomes.append(await self._execute(job))
            return outcomes

        keys = list(groups)
        gathered = await asyncio.gather(
            *(run_group(groups[key]) for key in keys), return_exceptions=True
        )
        for key, outcomes in zip(keys, gathered):
            if isinstance(outcomes, BaseException):
                if not isinstance(outcomes, Exception):
                    raise outcomes
                # Jobs of the group stay running until stale recovery picks them up
                result.errored += 1
                logger.error("job_group_failed", lock_key=key, error=_describe(outcomes))
                continue
            for outcome in outcomes:
                if outcome == JobStatus.COMPLETED:
                    result.completed += 1
                elif outcome == JobStatus.PENDING:
                    result.retried += 1
                else:
                    result.failed += 1

        logger.info("dispatch_cycle_finished", **result.model_dump())
        return result

    async def _claim_due(self, now: datetime) -> list[Any]:
        async with self.session_factory() as session:
            candidates = (
                await session.execute(
                    select(jobs)
                    .where(
                        and_(
                            jobs.c.status == JobStatus.PENDING.value,
                            jobs.c.scheduled_for <= now,
                        )
                    )
                    .order_by(jobs.c.priority, jobs.c.created_at, jobs.c.id)
                    .limit(self.batch_size)
                )
            ).fetchall()

            claimed = []
            for job in candidates:
                claim = await session.execute(
                    update(jobs)
                    .where(and_(jobs.c.id == job.id, jobs.c.status == JobStatus.PENDING.value))
                    .values(status=JobStatus.RUNNING.value, started_at=now, updated_at=now)
                )
                if claim.rowcount == 1:
                    claimed.append(job)
            await session.commit()

        for job in claimed:
            logger.debug("job_claimed", job_id=str(job.id), job_type=job.job_type)
        return claimed

    async def _execute(self, job: Any) -> JobStatus:
        job_type = JobType(job.job_type)
        definition = self._definitions.get(job_type)
        lock = self.key_lock.hold(job.lock_key) if job.lock_key else nullcontext()
        started = time.monotonic()

        try:
            if definition is None:
                raise ValidationException(f"No handler registered for job type '{job_type.value}'")
            async with lock:
                async with self.session_factory() as session:
                    try:
                        await asyncio.wait_for(
                            definition.handler(session, dict(job.payload)),
                            timeout=self.handler_timeout,
                        )
                    except TimeoutError:
                        raise TransientStoreError(
                            f"Handler timed out after {self.handler_timeout:g}s"
                        ) from None
        except Exception as e:
            JOB_DURATION.labels(job_type=job_type.value).observe(time.monotonic() - started)
            return await self._record_failure(job, e, definition)

        JOB_DURATION.labels(job_type=job_type.value).observe(time.monotonic() - started)
        await self._record_success(job)
        return JobStatus.COMPLETED

    async def _record_success(self, job: Any) -> None:
        now = utcnow()
        async with self.session_factory() as session:
            await session.execute(
                update(jobs)
                .where(and_(jobs.c.id == job.id, jobs.c.status == JobStatus.RUNNING.value))
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
        JOB_OUTCOMES.labels(job_type=job.job_type, outcome="completed").inc()
        logger.info("job_completed", job_id=str(job.id), job_type=job.job_type)

    async def _record_failure(
        self,
        job: Any,
        error: Exception,
        definition: JobDefinition | None,
    ) -> JobStatus:
        now = utcnow()
        message = _describe(error)
        retry_count = min(job.retry_count + 1, job.max_retries)
        will_retry = _is_retryable(error) and retry_count < job.max_retries

        if will_retry:
            values = {
                "status": JobStatus.PENDING.value,
                "scheduled_for": now
                + backoff_delay(retry_count, self.backoff_base_seconds, self.backoff_max_seconds),
                "started_at": None,
            }
        else:
            values = {"status": JobStatus.FAILED.value, "completed_at": now}

        async with self.session_factory() as session:
            await session.execute(
                update(jobs)
                .where(and_(jobs.c.id == job.id, jobs.c.status == JobStatus.RUNNING.value))
                .values(retry_count=retry_count, error_message=message, updated_at=now, **values)
            )
            await session.commit()

        if will_retry:
            JOB_OUTCOMES.labels(job_type=job.job_type, outcome="retried").inc()
            logger.warning(
                "job_retry_scheduled",
                job_id=str(job.id),
                job_type=job.job_type,
                retry_count=retry_count,
                max_retries=job.max_retries,
                scheduled_for=values["scheduled_for"].isoformat(),
                error=message,
            )
            return JobStatus.PENDING

        JOB_OUTCOMES.labels(job_type=job.job_type, outcome="failed").inc()
        logger.error(
            "job_failed",
            job_id=str(job.id),
            job_type=job.job_type,
            retry_count=retry_count,
            error=message,
        )
        await self._run_failure_hook(job, definition, message)
        return JobStatus.FAILED

    async def _run_failure_hook(
        self,
        job: Any,
        definition: JobDefinition | None,
        reason: str,
    ) -> None:
        if definition is None or definition.on_failure is None:
            return
        try:
            async with self.session_factory() as session:
                await definition.on_failure(session, dict(job.payload), reason)
        except Exception as e:
            # The job row is already terminal; the hook's own failure is only reported
            logger.error("job_failure_hook_failed", job_id=str(job.id), error=str(e))

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def cancel_job(self, job_id: UUID) -> JobResponse:
        """
        Cancel a pending job.

        Running jobs are deliberately not cancellable: they must finish or
        fail on their own so a batch write is never cut short.

        Raises:
            NotFoundException: If the job does not exist
            ConflictException: If the job is running or already terminal
        """
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(jobs)
                .where(and_(jobs.c.id == job_id, jobs.c.status == JobStatus.PENDING.value))
                .values(
                    status=JobStatus.CANCELLED.value,
                    completed_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

            row = (await session.execute(select(jobs).where(jobs.c.id == job_id))).fetchone()

        if row is None:
            raise NotFoundException("Job not found")
        if result.rowcount != 1:
            if row.status == JobStatus.RUNNING.value:
                raise ConflictException(
                    "Job is running; running jobs cannot be cancelled and will finish or fail"
                )
            raise ConflictException(f"Job is already {row.status}")

        logger.info("job_cancelled", job_id=str(job_id), job_type=row.job_type)
        await self._run_failure_hook(row, self._definitions.get(JobType(row.job_type)), "Cancelled")
        return JobResponse.model_validate(dict(row._mapping))

    async def requeue_stale_jobs(self, stale_after: timedelta | None = None) -> int:
        """
        Recover jobs left running by a worker that died.

        Each recovered job counts one failed attempt; jobs that exhausted
        their retries become failed.

        Returns:
            Number of jobs recovered
        """
        stale_after = _default(stale_after, timedelta(seconds=settings.job_stale_after_seconds))
        now = utcnow()
        failed_rows = []
        recovered = 0

        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(jobs).where(
                        and_(
                            jobs.c.status == JobStatus.RUNNING.value,
                            jobs.c.started_at < now - stale_after,
                        )
                    )
                )
            ).fetchall()

            for row in rows:
                retry_count = min(row.retry_count + 1, row.max_retries)
                if retry_count < row.max_retries:
                    values = {"status": JobStatus.PENDING.value, "scheduled_for": now, "started_at": None}
                else:
                    values = {"status": JobStatus.FAILED.value, "completed_at": now}
                result = await session.execute(
                    update(jobs)
                    .where(and_(jobs.c.id == row.id, jobs.c.status == JobStatus.RUNNING.value))
                    .values(
                        retry_count=retry_count,
                        error_message="Worker lost while job was running",
                        updated_at=now,
                        **values,
                    )
                )
                if result.rowcount == 1:
                    recovered += 1
                    if values["status"] == JobStatus.FAILED.value:
                        failed_rows.append(row)
            await session.commit()

        for row in failed_rows:
            await self._run_failure_hook(
                row,
                self._definitions.get(JobType(row.job_type)),
                "Worker lost while job was running",
            )

        if recovered:
            logger.warning("stale_jobs_recovered", count=recovered)
        return recovered

    async def purge_finished_jobs(self, older_than_days: int | None = None) -> int:
        """
        Delete completed and cancelled jobs older than the retention window.

        Failed jobs are kept for operator follow-up.

        Returns:
            Number of jobs deleted
        """
        days = _default(older_than_days, settings.job_retention_days)
        cutoff = utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(jobs).where(
                    and_(
                        jobs.c.status.in_(
                            [JobStatus.COMPLETED.value, JobStatus.CANCELLED.value]
                        ),
                        jobs.c.completed_at < cutoff,
                    )
                )
            )
            await session.commit()
        logger.info("finished_jobs_purged", count=result.rowcount, older_than_days=days)
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> JobResponse:
        """
        Get job by ID.

        Raises:
            NotFoundException: If the job does not exist
        """
        async with self.session_factory() as session:
            row = (await session.execute(select(jobs).where(jobs.c.id == job_id))).fetchone()
        if row is None:
            raise NotFoundException("Job not found")
        return JobResponse.model_validate(dict(row._mapping))

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> JobListResponse:
        """List jobs, newest first."""
        conditions = []
        if status:
            conditions.append(jobs.c.status == JobStatus(status).value)
        if job_type:
            conditions.append(jobs.c.job_type == JobType(job_type).value)

        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(jobs).where(and_(True, *conditions))
                )
            ).scalar() or 0
            rows = (
                await session.execute(
                    select(jobs)
                    .where(and_(True, *conditions))
                    .order_by(jobs.c.created_at.desc())
                    .limit(page_size)
                    .offset((page - 1) * page_size)
                )
            ).fetchall()

        return JobListResponse(
            total=total,
            page=page,
            page_size=page_size,
            items=[JobResponse.model_validate(dict(row._mapping)) for row in rows],
        )

    async def job_stats(self) -> JobStats:
        """Count jobs by status and by type."""
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(jobs.c.status, jobs.c.job_type, func.count()).group_by(
                        jobs.c.status, jobs.c.job_type
                    )
                )
            ).fetchall()

        by_status: dict[str, int] = {status.value: 0 for status in JobStatus}
        by_type: dict[str, int] = {job_type.value: 0 for job_type in JobType}
        for status, job_type, count in rows:
            by_status[status] = by_status.get(status, 0) + count
            by_type[job_type] = by_type.get(job_type, 0) + count

        return JobStats(total=sum(by_status.values()), by_status=by_status, by_type=by_type)
