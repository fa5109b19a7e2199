"""
Email composer: merges the day's mapper and driver sections into one message per user.

Triggered by each finished phase (``compose_if_ready``) and by the overdue sweep (``compose_overdue``)
for days where one phase never reported. The claim (pending -> sending) is committed before the transport
is called, so concurrent triggers send at most once. After delivery the History rows of the phases that
reported are closed: ``processing -> sent`` on success, ``processing -> technical_error`` on failure.
A phase that never reported keeps its ``processing`` row.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from record_alerts.config import settings
from record_alerts.core.errors import EmailDeliveryError
from record_alerts.core.metrics import EMAILS
from record_alerts.models.pending_email import PendingEmailStatus
from record_alerts.services import history, pending_email
from record_alerts.services.email_transport import send_email

logger = logging.getLogger(__name__)

EmailTransport = Callable[[str, str, str], Awaitable[None]]

SUBJECT_COMBINED = "Daily Update: New Records & Position Changes"
SUBJECT_MAPPER = "New times in {username}'s maps"
SUBJECT_DRIVER = "Position Changes on Tracked Maps"

MAPPER_HEADER = "🎯 MAPPER ALERTS\nNew times have been driven on your map(s):"
DRIVER_HEADER = "🏎️ DRIVER NOTIFICATIONS\nYour position has changed on the following maps:"
FOOTER = "---\nTrackmania Record Tracker"


def compose_message(username: str, mapper_content: str, driver_content: str) -> tuple[str, str] | None:
    """(subject, body), or None when both sections are empty."""
    mapper_content = (mapper_content or "").strip()
    driver_content = (driver_content or "").strip()
    if not mapper_content and not driver_content:
        return None

    if mapper_content and driver_content:
        subject = SUBJECT_COMBINED
    elif mapper_content:
        subject = SUBJECT_MAPPER.format(username=username)
    else:
        subject = SUBJECT_DRIVER

    parts = [f"Hello {username}!", "Here's your daily Trackmania update:"]
    if mapper_content:
        parts.append(f"{MAPPER_HEADER}\n\n{mapper_content}")
    if driver_content:
        parts.append(f"{DRIVER_HEADER}\n\n{driver_content}")
    parts.append(FOOTER)
    return subject, "\n\n".join(parts)


async def _claim(session: AsyncSession, user_id: int, day: date, force: bool) -> bool:
    row = await pending_email.get_pending(session, user_id, day)
    if row is None or row.status != PendingEmailStatus.pending.value:
        return False
    if not force and not (row.mapper_done and row.driver_done):
        logger.debug("Composer: user_id=%s on %s waiting for the other phase", user_id, day)
        return False
    claimed = await pending_email.claim(session, user_id, day)
    await session.commit()
    return claimed


async def compose_if_ready(
    session_maker: async_sessionmaker[AsyncSession],
    user_id: int,
    day: date,
    *,
    force: bool = False,
    transport: EmailTransport = send_email,
) -> PendingEmailStatus | None:
    """
    Compose and send the user's email for ``day`` once both phases reported (or ``force``).
    Returns the closing status, or None when nothing was done (not ready, or claimed elsewhere).
    Never raises on transport failure.
    """
    async with session_maker() as session:
        if not await _claim(session, user_id, day, force):
            return None

    async with session_maker() as session:
        row = await pending_email.get_pending(session, user_id, day)
        if row is None:
            return None

        if await history.has_sent(session, user_id, day):
            logger.info("Composer: user_id=%s already emailed for %s; skipping", user_id, day)
            await pending_email.close(session, row, PendingEmailStatus.skipped)
            await session.commit()
            EMAILS.labels(status="duplicate").inc()
            return PendingEmailStatus.skipped

        message = compose_message(row.username, row.mapper_content, row.driver_content)
        if message is None:
            logger.info("Composer: nothing to send to user_id=%s for %s", user_id, day)
            await pending_email.close(session, row, PendingEmailStatus.skipped)
            await session.commit()
            EMAILS.labels(status="empty").inc()
            return PendingEmailStatus.skipped

        subject, body = message
        reported = pending_email.reported_types(row)
        try:
            await transport(row.email, subject, body)
        except Exception as e:
            logger.error("Composer: delivery to user_id=%s failed: %s", user_id, type(e).__name__)
            await history.mark_failed(session, user_id, day, reported, EmailDeliveryError.public_message)
            await pending_email.close(session, row, PendingEmailStatus.failed)
            await session.commit()
            EMAILS.labels(status="failed").inc()
            return PendingEmailStatus.failed

        delivered = await history.mark_delivered(session, user_id, day, reported)
        await pending_email.close(session, row, PendingEmailStatus.sent)
        await session.commit()
        EMAILS.labels(status="sent").inc()
        logger.info("Composer: emailed user_id=%s for %s (%s history rows sent)", user_id, day, delivered)
        return PendingEmailStatus.sent


async def compose_overdue(
    session_maker: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
    transport: EmailTransport = send_email,
) -> int:
    """Force composition of pending emails older than the wait window, then purge old closed rows."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.composer_wait_minutes)
    async with session_maker() as session:
        overdue = await pending_email.list_overdue(session, cutoff)

    composed = 0
    for user_id, day in overdue:
        logger.info("Composer: user_id=%s on %s overdue; composing with available sections", user_id, day)
        status = await compose_if_ready(session_maker, user_id, day, force=True, transport=transport)
        if status is not None:
            composed += 1

    async with session_maker() as session:
        purged = await pending_email.purge_closed(
            session, now.date() - timedelta(days=settings.pending_email_retention_days)
        )
        await session.commit()
    if purged:
        logger.info("Composer: purged %s closed pending emails", purged)
    return composed
