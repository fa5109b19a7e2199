"""
Notification history ledger: one row per (user, notification type, processing date).

A phase opens the row as ``processing`` and it is finalized in place. A terminal row is the
idempotency gate for redelivered or rerun jobs: once ``sent``/``no_new_times``/``technical_error``
is recorded for the day, the phase does no work. ``sent`` rows are never modified again.
Callers own the transaction (functions only flush).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from record_alerts.db.base import utcnow
from record_alerts.models.notification_history import NotificationHistory, NotificationStatus, NotificationType

logger = logging.getLogger(__name__)

STALE_PROCESSING_MESSAGE = "Processing did not complete"
EMAIL_SENT_MESSAGE = "Email sent"


async def get_row(
    session: AsyncSession, user_id: int, notification_type: NotificationType, day: date
) -> NotificationHistory | None:
    r = await session.execute(
        select(NotificationHistory).where(
            NotificationHistory.user_id == user_id,
            NotificationHistory.notification_type == notification_type.value,
            NotificationHistory.processing_date == day,
        )
    )
    return r.scalar_one_or_none()


async def begin(
    session: AsyncSession,
    user_id: int,
    username: str,
    notification_type: NotificationType,
    day: date,
) -> NotificationHistory | None:
    """
    Ensure a ``processing`` row for the key. Returns None when a terminal row already exists
    (already handled today); a leftover ``processing`` row from an abandoned attempt is reused.
    """
    row = await get_row(session, user_id, notification_type, day)
    if row is None:
        row = NotificationHistory(
            user_id=user_id,
            username=username,
            notification_type=notification_type.value,
            status=NotificationStatus.processing.value,
            records_found=0,
            processing_date=day,
        )
        try:
            async with session.begin_nested():
                session.add(row)
        except IntegrityError:
            # Another delivery of the same job won the insert
            row = await get_row(session, user_id, notification_type, day)
            if row is None:
                raise
    if NotificationStatus(row.status).is_terminal:
        logger.info(
            "History: %s for user_id=%s on %s already %s; skipping",
            notification_type.value,
            user_id,
            day,
            row.status,
        )
        return None
    return row


async def finalize(
    session: AsyncSession,
    row: NotificationHistory,
    status: NotificationStatus,
    *,
    records_found: int = 0,
    message: str | None = None,
) -> None:
    """Record the phase outcome on its row. ``processing`` keeps the row open until the composer delivers."""
    if row.status == NotificationStatus.sent.value:
        logger.warning("History: row id=%s already sent; not overwriting with %s", row.id, status.value)
        return
    row.status = status.value
    row.records_found = records_found
    row.message = message
    row.updated_at = utcnow()
    await session.flush()


async def has_sent(session: AsyncSession, user_id: int, day: date) -> bool:
    """True if any notification type for the user/day is already ``sent``."""
    r = await session.execute(
        select(NotificationHistory.id)
        .where(
            NotificationHistory.user_id == user_id,
            NotificationHistory.processing_date == day,
            NotificationHistory.status == NotificationStatus.sent.value,
        )
        .limit(1)
    )
    return r.first() is not None


async def _close_processing(
    session: AsyncSession,
    user_id: int,
    day: date,
    notification_types: Iterable[NotificationType],
    status: NotificationStatus,
    message: str,
) -> int:
    types = [t.value for t in notification_types]
    if not types:
        return 0
    result = await session.execute(
        update(NotificationHistory)
        .where(
            NotificationHistory.user_id == user_id,
            NotificationHistory.processing_date == day,
            NotificationHistory.notification_type.in_(types),
            NotificationHistory.status == NotificationStatus.processing.value,
        )
        .values(status=status.value, message=message, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def mark_delivered(
    session: AsyncSession, user_id: int, day: date, notification_types: Iterable[NotificationType]
) -> int:
    """
    Composed email went out: the open rows of the phases that reported become ``sent``.
    A phase that never reported keeps its ``processing`` row so a redelivery can still run it.
    """
    return await _close_processing(
        session, user_id, day, notification_types, NotificationStatus.sent, EMAIL_SENT_MESSAGE
    )


async def mark_failed(
    session: AsyncSession, user_id: int, day: date, notification_types: Iterable[NotificationType], message: str
) -> int:
    """Delivery failed: the reported phases' open rows become ``technical_error``; ``sent`` rows are untouched."""
    return await _close_processing(
        session, user_id, day, notification_types, NotificationStatus.technical_error, message
    )


async def reconcile_stale(session: AsyncSession, before_day: date) -> int:
    """Rows still ``processing`` from earlier days never completed: close them as ``technical_error``."""
    result = await session.execute(
        update(NotificationHistory)
        .where(
            NotificationHistory.processing_date < before_day,
            NotificationHistory.status == NotificationStatus.processing.value,
        )
        .values(
            status=NotificationStatus.technical_error.value,
            message=STALE_PROCESSING_MESSAGE,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    if count:
        logger.warning("History: reconciled %s stale processing rows before %s", count, before_day)
    return count
