"""
Pending email accumulator keyed by (user_id, processing_date).

Each phase records its formatted section (replacing any earlier attempt of the same phase) and marks
itself done. The composer claims the row with a conditional UPDATE (pending -> sending) so that only one
trigger ever composes it, then closes it and discards the content.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from record_alerts.db.base import utcnow
from record_alerts.models.notification_history import NotificationType
from record_alerts.models.pending_email import PendingEmail, PendingEmailStatus

logger = logging.getLogger(__name__)

CLOSED_STATUSES = (PendingEmailStatus.sent.value, PendingEmailStatus.skipped.value, PendingEmailStatus.failed.value)


async def get_pending(session: AsyncSession, user_id: int, day: date) -> PendingEmail | None:
    r = await session.execute(
        select(PendingEmail).where(PendingEmail.user_id == user_id, PendingEmail.processing_date == day)
    )
    return r.scalar_one_or_none()


async def _get_or_create(session: AsyncSession, user_id: int, day: date, username: str, email: str) -> PendingEmail:
    row = await get_pending(session, user_id, day)
    if row is not None:
        return row
    row = PendingEmail(
        user_id=user_id,
        processing_date=day,
        username=username,
        email=email,
        mapper_content="",
        driver_content="",
        mapper_records=0,
        driver_records=0,
        mapper_done=False,
        driver_done=False,
        status=PendingEmailStatus.pending.value,
    )
    try:
        async with session.begin_nested():
            session.add(row)
    except IntegrityError:
        # The other phase created it concurrently
        row = await get_pending(session, user_id, day)
        if row is None:
            raise
    return row


async def record_phase(
    session: AsyncSession,
    *,
    user_id: int,
    day: date,
    username: str,
    email: str,
    notification_type: NotificationType,
    content: str,
    records_found: int,
) -> bool:
    """
    Store one phase's section and mark the phase done. Returns False when the day's email was
    already claimed or closed, in which case the content can no longer be delivered.
    """
    row = await _get_or_create(session, user_id, day, username, email)
    await session.refresh(row)
    if row.status != PendingEmailStatus.pending.value:
        logger.warning(
            "Pending email for user_id=%s on %s is %s; %s section not recorded",
            user_id,
            day,
            row.status,
            notification_type.value,
        )
        return False
    if notification_type is NotificationType.mapper_alert:
        row.mapper_content = content
        row.mapper_records = records_found
        row.mapper_done = True
    else:
        row.driver_content = content
        row.driver_records = records_found
        row.driver_done = True
    row.email = email or row.email
    row.updated_at = utcnow()
    await session.flush()
    return True


def reported_types(row: PendingEmail) -> list[NotificationType]:
    """Phases that recorded a section (possibly empty) for the day."""
    types = []
    if row.mapper_done:
        types.append(NotificationType.mapper_alert)
    if row.driver_done:
        types.append(NotificationType.driver_notification)
    return types


async def claim(session: AsyncSession, user_id: int, day: date) -> bool:
    """Atomically move the row from pending to sending. Exactly one concurrent caller gets True."""
    result = await session.execute(
        update(PendingEmail)
        .where(
            PendingEmail.user_id == user_id,
            PendingEmail.processing_date == day,
            PendingEmail.status == PendingEmailStatus.pending.value,
        )
        .values(status=PendingEmailStatus.sending.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def close(session: AsyncSession, row: PendingEmail, status: PendingEmailStatus) -> None:
    """Final status; the composed content is discarded."""
    row.status = status.value
    row.mapper_content = ""
    row.driver_content = ""
    row.updated_at = utcnow()
    await session.flush()


async def list_overdue(session: AsyncSession, created_before: datetime) -> list[tuple[int, date]]:
    """(user_id, day) of pending rows created before the cutoff, still waiting for a phase."""
    r = await session.execute(
        select(PendingEmail.user_id, PendingEmail.processing_date).where(
            PendingEmail.status == PendingEmailStatus.pending.value,
            PendingEmail.created_at < created_before,
        )
    )
    return [(row[0], row[1]) for row in r.all()]


async def purge_closed(session: AsyncSession, older_than: date) -> int:
    result = await session.execute(
        delete(PendingEmail)
        .where(
            PendingEmail.status.in_(CLOSED_STATUSES),
            PendingEmail.processing_date < older_than,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
