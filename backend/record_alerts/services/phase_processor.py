"""
Phase processor: runs one (user, phase) job from the queue.

Per job: history gate -> phase check -> pending email section -> history outcome -> composer trigger.
Phase errors are recorded as ``technical_error`` with a fixed message and never propagate; only
database failures escape (the queue retries those).
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from record_alerts.core.errors import public_message_for
from record_alerts.core.metrics import PHASE_RESULTS
from record_alerts.models.notification_history import NotificationStatus, NotificationType
from record_alerts.schemas.jobs import PhaseJobMessage
from record_alerts.services import history, pending_email
from record_alerts.services.driver_notifications import check_driver_notifications
from record_alerts.services.email_composer import EmailTransport, compose_if_ready
from record_alerts.services.email_transport import send_email
from record_alerts.services.leaderboard_client import LeaderboardClient
from record_alerts.services.mapper_alerts import PhaseOutput, check_mapper_alerts
from record_alerts.services.runtime_config import load_runtime_config

logger = logging.getLogger(__name__)

ALREADY_CLOSED_MESSAGE = "Daily email already processed"


def _summary(notification_type: NotificationType, output: PhaseOutput) -> str:
    if notification_type is NotificationType.mapper_alert:
        return f"{output.records_found} new record(s) found"
    return f"{output.records_found} position change(s) found"


async def _run_phase(
    session: AsyncSession, client: LeaderboardClient, message: PhaseJobMessage, now: datetime | None
) -> PhaseOutput:
    if message.notification_type is NotificationType.mapper_alert:
        config = await load_runtime_config(session)
        return await check_mapper_alerts(session, client, message, config, now)
    return await check_driver_notifications(session, client, message, now)


async def _record_failure(session: AsyncSession, message: PhaseJobMessage, error_message: str) -> None:
    row = await history.begin(
        session, message.user_id, message.username, message.notification_type, message.processing_date
    )
    if row is not None:
        await history.finalize(session, row, NotificationStatus.technical_error, message=error_message)
    # Empty section so the composer does not wait for this phase
    await pending_email.record_phase(
        session,
        user_id=message.user_id,
        day=message.processing_date,
        username=message.username,
        email=message.email,
        notification_type=message.notification_type,
        content="",
        records_found=0,
    )


async def process_phase_job(
    session_maker: async_sessionmaker[AsyncSession],
    client: LeaderboardClient,
    message: PhaseJobMessage,
    *,
    now: datetime | None = None,
    transport: EmailTransport = send_email,
) -> NotificationStatus:
    """Run one phase for one user and return the resulting history status for the day."""
    ntype = message.notification_type
    phase_label = str(message.phase)

    async with session_maker() as session:
        row = await history.begin(session, message.user_id, message.username, ntype, message.processing_date)
        await session.commit()
        if row is None:
            PHASE_RESULTS.labels(phase=phase_label, status="already_handled").inc()
            existing = await history.get_row(session, message.user_id, ntype, message.processing_date)
            return NotificationStatus(existing.status)

        try:
            output = await _run_phase(session, client, message, now)
            recorded = await pending_email.record_phase(
                session,
                user_id=message.user_id,
                day=message.processing_date,
                username=message.username,
                email=message.email,
                notification_type=ntype,
                content=output.content if output.has_content else "",
                records_found=output.records_found,
            )
            records_found = output.records_found
            if not output.has_content:
                status, summary = NotificationStatus.no_new_times, "No new times found"
            elif recorded:
                # Stays open until the composer delivers the email
                status, summary = NotificationStatus.processing, _summary(ntype, output)
            else:
                # The email already went out: drop the row updates so the changes are reported on a later day
                await session.rollback()
                row = await history.get_row(session, message.user_id, ntype, message.processing_date)
                status, summary, records_found = NotificationStatus.technical_error, ALREADY_CLOSED_MESSAGE, 0
            await history.finalize(session, row, status, records_found=records_found, message=summary)
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.exception(
                "Phase %s for user_id=%s (%s) failed: %s", message.phase, message.user_id, message.username, e
            )
            status = NotificationStatus.technical_error
            await _record_failure(session, message, public_message_for(e))
            await session.commit()

    PHASE_RESULTS.labels(phase=phase_label, status=status.value).inc()
    logger.info("Phase %s for user_id=%s finished: %s", message.phase, message.user_id, status.value)

    await compose_if_ready(session_maker, message.user_id, message.processing_date, transport=transport)

    async with session_maker() as session:
        final = await history.get_row(session, message.user_id, ntype, message.processing_date)
    return NotificationStatus(final.status) if final is not None else status
