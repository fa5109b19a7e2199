"""
Phase job queue on the phase_jobs table, and the worker that drains it.

Delivery is at-least-once: a job is claimed with a conditional UPDATE (pending -> running), runs under a
wall-clock budget, and on timeout or infrastructure failure returns to pending with exponential backoff
until max_attempts, after which it is left ``dead``. Exact duplicates (same dedup key) are ignored on enqueue.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone

import pydantic
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from record_alerts.config import settings
from record_alerts.core.errors import ValidationError
from record_alerts.models.notification_history import NotificationStatus, NotificationType
from record_alerts.models.phase_job import JobStatus, PhaseJob
from record_alerts.schemas.jobs import PhaseJobMessage
from record_alerts.services import history
from record_alerts.services.email_composer import EmailTransport
from record_alerts.services.email_transport import send_email
from record_alerts.services.leaderboard_client import LeaderboardClient
from record_alerts.services.phase_processor import process_phase_job

logger = logging.getLogger(__name__)


async def enqueue_phase_job(session: AsyncSession, message: PhaseJobMessage, now: datetime | None = None) -> bool:
    """Add the job unless one with the same dedup key exists. Returns True if a row was inserted."""
    key = message.dedup_key
    r = await session.execute(select(PhaseJob.id).where(PhaseJob.dedup_key == key))
    if r.scalar_one_or_none() is not None:
        logger.debug("Queue: job %s already enqueued", key)
        return False
    now = now or datetime.now(timezone.utc)
    try:
        async with session.begin_nested():
            session.add(
                PhaseJob(
                    dedup_key=key,
                    user_id=message.user_id,
                    phase=message.phase,
                    payload=message.model_dump(mode="json"),
                    status=JobStatus.pending.value,
                    attempts=0,
                    max_attempts=settings.job_max_attempts,
                    available_at=now,
                    requested_at=now,
                )
            )
    except IntegrityError:
        logger.debug("Queue: job %s enqueued concurrently", key)
        return False
    return True


async def claim_next(session: AsyncSession, now: datetime | None = None) -> PhaseJob | None:
    """Claim the oldest available pending job (committed). None when the queue is empty."""
    now = now or datetime.now(timezone.utc)
    for _ in range(5):
        r = await session.execute(
            select(PhaseJob.id)
            .where(PhaseJob.status == JobStatus.pending.value, PhaseJob.available_at <= now)
            .order_by(PhaseJob.phase, PhaseJob.available_at, PhaseJob.id)
            .limit(1)
        )
        job_id = r.scalar_one_or_none()
        if job_id is None:
            return None
        result = await session.execute(
            update(PhaseJob)
            .where(PhaseJob.id == job_id, PhaseJob.status == JobStatus.pending.value)
            .values(status=JobStatus.running.value, started_at=now, attempts=PhaseJob.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount == 1:
            return await session.get(PhaseJob, job_id, populate_existing=True)
        # Another worker took it; look again
    return None


async def complete(session: AsyncSession, job_id: int, now: datetime | None = None) -> None:
    await session.execute(
        update(PhaseJob)
        .where(PhaseJob.id == job_id)
        .values(status=JobStatus.done.value, finished_at=now or datetime.now(timezone.utc), error_message=None)
        .execution_options(synchronize_session=False)
    )


async def fail(
    session: AsyncSession, job_id: int, error: str, now: datetime | None = None, *, retry: bool = True
) -> JobStatus:
    """Back to pending with backoff, or ``dead`` once attempts are exhausted (or ``retry`` is False)."""
    now = now or datetime.now(timezone.utc)
    job = await session.get(PhaseJob, job_id, populate_existing=True)
    if job is None:
        return JobStatus.dead
    job.error_message = error[:500]
    if not retry or job.attempts >= job.max_attempts:
        job.status = JobStatus.dead.value
        job.finished_at = now
        logger.error("Queue: job %s dead after %s attempt(s): %s", job.dedup_key, job.attempts, error[:200])
    else:
        delay = settings.job_retry_delay_seconds * (2 ** max(0, job.attempts - 1))
        job.status = JobStatus.pending.value
        job.available_at = now + timedelta(seconds=delay)
        logger.warning("Queue: job %s retry in %ss (attempt %s)", job.dedup_key, delay, job.attempts)
    await session.flush()
    return JobStatus(job.status)


async def requeue_stale_running(session: AsyncSession, now: datetime | None = None) -> int:
    """Jobs left ``running`` past the budget (crashed worker) become available again or dead."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=settings.job_timeout_seconds * 2)
    r = await session.execute(
        select(PhaseJob).where(PhaseJob.status == JobStatus.running.value, PhaseJob.started_at < cutoff)
    )
    jobs = list(r.scalars().all())
    for job in jobs:
        if job.attempts >= job.max_attempts:
            job.status = JobStatus.dead.value
            job.finished_at = now
        else:
            job.status = JobStatus.pending.value
            job.available_at = now
        job.error_message = "Abandoned while running"
    if jobs:
        await session.flush()
        logger.warning("Queue: requeued %s stale running jobs", len(jobs))
    return len(jobs)


def _payload_day(payload: dict) -> date:
    try:
        return date.fromisoformat(str(payload.get("processing_date")))
    except ValueError:
        return datetime.now(timezone.utc).date()


async def _reject_invalid(
    session_maker: async_sessionmaker[AsyncSession], job: PhaseJob, error: pydantic.ValidationError
) -> None:
    """Invalid payload: not retried; the day's history row is closed as technical_error."""
    logger.error("Queue: job %s has an invalid payload: %s", job.dedup_key, error)
    payload = job.payload or {}
    ntype = NotificationType.mapper_alert if job.phase == 1 else NotificationType.driver_notification
    async with session_maker() as session:
        row = await history.begin(
            session, job.user_id, str(payload.get("username") or job.user_id), ntype, _payload_day(payload)
        )
        if row is not None:
            await history.finalize(
                session, row, NotificationStatus.technical_error, message=ValidationError.public_message
            )
        await fail(session, job.id, f"invalid payload: {error.error_count()} error(s)", retry=False)
        await session.commit()


async def run_job(
    session_maker: async_sessionmaker[AsyncSession],
    client: LeaderboardClient,
    job: PhaseJob,
    transport: EmailTransport = send_email,
) -> None:
    try:
        message = PhaseJobMessage.model_validate(job.payload)
    except pydantic.ValidationError as e:
        await _reject_invalid(session_maker, job, e)
        return

    try:
        await asyncio.wait_for(
            process_phase_job(session_maker, client, message, transport=transport),
            timeout=settings.job_timeout_seconds,
        )
    except Exception as e:
        logger.exception("Queue: job %s failed: %s", job.dedup_key, e)
        async with session_maker() as session:
            await fail(session, job.id, f"{type(e).__name__}: {e}")
            await session.commit()
        return

    async with session_maker() as session:
        await complete(session, job.id)
        await session.commit()


async def run_queue_worker(
    session_maker: async_sessionmaker[AsyncSession],
    client: LeaderboardClient,
    *,
    concurrency: int | None = None,
    max_jobs: int | None = None,
    transport: EmailTransport = send_email,
) -> int:
    """Drain available jobs with at most ``concurrency`` running at once. Returns the number of jobs run."""
    sem = asyncio.Semaphore(concurrency or settings.worker_concurrency)
    tasks: set[asyncio.Task] = set()
    started = 0
    while max_jobs is None or started < max_jobs:
        await sem.acquire()
        async with session_maker() as session:
            job = await claim_next(session)
        if job is None:
            sem.release()
            break
        started += 1
        task = asyncio.create_task(run_job(session_maker, client, job, transport))
        tasks.add(task)
        task.add_done_callback(lambda t: (tasks.discard(t), sem.release()))
    if tasks:
        await asyncio.gather(*tasks)
    if started:
        logger.info("Queue: ran %s phase jobs", started)
    return started
