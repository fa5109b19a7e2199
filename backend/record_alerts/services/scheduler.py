"""
Daily cycle: reconcile leftovers from earlier runs, then fan out one phase job per (user, phase).

All phase-1 jobs are enqueued before any phase-2 job. Dedup keys make a rerun of the same day a no-op.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from record_alerts.core.metrics import JOBS_ENQUEUED
from record_alerts.schemas.jobs import JobType, PhaseJobMessage, Subscriber
from record_alerts.services import history
from record_alerts.services.job_queue import enqueue_phase_job, requeue_stale_running
from record_alerts.services.subscriptions import fetch_validated_subscribers

logger = logging.getLogger(__name__)


async def _enqueue_for(
    session: AsyncSession, subscriber: Subscriber, job_type: JobType, now: datetime, day: date
) -> bool:
    """Enqueue one job; failures are logged and reported as False."""
    try:
        message = PhaseJobMessage.for_subscriber(subscriber, job_type, now, day)
        inserted = await enqueue_phase_job(session, message, now)
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error("Scheduler: enqueue %s for user_id=%s failed: %s", job_type.value, subscriber.user_id, e)
        JOBS_ENQUEUED.labels(phase=job_type.value, result="error").inc()
        return False
    JOBS_ENQUEUED.labels(phase=job_type.value, result="queued" if inserted else "duplicate").inc()
    return True


async def run_daily_cycle(
    session_maker: async_sessionmaker[AsyncSession],
    today: date | None = None,
    now: datetime | None = None,
) -> int:
    """Returns the number of users whose two jobs are queued for the day (new or already present)."""
    now = now or datetime.now(timezone.utc)
    day = today or now.date()

    async with session_maker() as session:
        reconciled = await history.reconcile_stale(session, day)
        requeued = await requeue_stale_running(session, now)
        await session.commit()
        subscribers = await fetch_validated_subscribers(session)
    if reconciled or requeued:
        logger.info("Scheduler: reconciled %s history rows, requeued %s jobs", reconciled, requeued)
    logger.info("Scheduler: %s subscribers for %s", len(subscribers), day)

    queued: dict[int, int] = {}
    async with session_maker() as session:
        for job_type in (JobType.map_alert_check, JobType.driver_notification_check):
            for subscriber in subscribers:
                if await _enqueue_for(session, subscriber, job_type, now, day):
                    queued[subscriber.user_id] = queued.get(subscriber.user_id, 0) + 1

    count = sum(1 for n in queued.values() if n == 2)
    logger.info("Scheduler: queued %s of %s users for %s", count, len(subscribers), day)
    return count
