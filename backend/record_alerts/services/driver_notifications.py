"""
Driver notification phase: position changes of the subscriber on the maps they track.

One top-N leaderboard call per map, shared by every notification on that map. Rows go
``active -> inactive`` on drop-out and are never reactivated here.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from record_alerts.config import settings
from record_alerts.core.errors import AuthError, PipelineError
from record_alerts.db.base import as_utc
from record_alerts.models.driver_notification import DriverNotification, DriverNotificationStatus
from record_alerts.schemas.jobs import PhaseJobMessage
from record_alerts.services.leaderboard_client import LeaderboardClient
from record_alerts.services.mapper_alerts import PhaseOutput, format_race_time
from record_alerts.services.position_diff import DroppedOut, PositionChanged, Unchanged, diff_position
from record_alerts.services.subscriptions import fetch_user_driver_notifications

logger = logging.getLogger(__name__)


def format_position_changed(map_name: str, change: PositionChanged) -> str:
    return (
        f"Map: {map_name}\n"
        f"Position changed: #{change.previous_position} → #{change.new_position}\n"
        f"Time: {format_race_time(change.new_score)}"
    )


def format_dropped_out(map_name: str, change: DroppedOut, top_n: int) -> str:
    return f"Map: {map_name}\nYou dropped out of the top {top_n} (was #{change.previous_position})"


def _touch(row: DriverNotification, now: datetime) -> None:
    last = row.last_checked
    if last is None or as_utc(last) < now:
        row.last_checked = now


def apply_diff(
    row: DriverNotification,
    result: Unchanged | PositionChanged | DroppedOut,
    now: datetime,
    top_n: int,
) -> str | None:
    """Update the row for one diff outcome and return the email line, if any."""
    _touch(row, now)
    map_name = row.map_name or row.map_uid
    if isinstance(result, PositionChanged):
        row.current_position = result.new_position
        row.personal_best_score = result.new_score
        return format_position_changed(map_name, result)
    if isinstance(result, DroppedOut):
        row.status = DriverNotificationStatus.inactive.value
        return format_dropped_out(map_name, result, top_n)
    if result.score is not None:
        row.personal_best_score = result.score
    return None


async def check_driver_notifications(
    session: AsyncSession,
    client: LeaderboardClient,
    job: PhaseJobMessage,
    now: datetime | None = None,
) -> PhaseOutput:
    """Diff every active notification of the user against the current top-N and format the driver section."""
    now = now or datetime.now(timezone.utc)
    top_n = settings.driver_top_n
    notifications = await fetch_user_driver_notifications(session, job.user_id)
    if not notifications:
        logger.info("Driver notifications: user_id=%s has none active", job.user_id)
        return PhaseOutput()

    by_map: dict[str, list[DriverNotification]] = defaultdict(list)
    for n in notifications:
        by_map[n.map_uid].append(n)

    lines: list[str] = []
    failures = 0
    last_error: PipelineError | None = None
    for map_uid, rows in by_map.items():
        try:
            top = await client.get_leaderboard(map_uid, length=top_n)
        except AuthError:
            raise
        except PipelineError as e:
            failures += 1
            last_error = e
            logger.warning("Driver notifications: map %s for %s failed: %s", map_uid, job.username, type(e).__name__)
            continue
        for row in rows:
            result = diff_position(row.current_position, row.personal_best_score, top, row.tm_account_id, top_n)
            line = apply_diff(row, result, now, top_n)
            if line:
                logger.info(
                    "Driver notifications: user_id=%s map %s %s", job.user_id, map_uid, result.kind
                )
                lines.append(line)

    if last_error is not None and failures == len(by_map):
        raise last_error
    await session.flush()
    return PhaseOutput(content="\n\n".join(lines), records_found=len(lines))
