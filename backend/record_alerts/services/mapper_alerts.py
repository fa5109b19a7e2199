"""
Mapper alert phase: new times driven on the subscriber's maps within the record window.

Accurate mode fetches every map's leaderboard. Above the map-count threshold the alert runs in
inaccurate mode: the shared MapPosition snapshot (Nth-place time per map) is consulted first and a
map's full leaderboard is only fetched when that snapshot moved inside the window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from record_alerts.config import settings
from record_alerts.core.errors import AuthError, PipelineError
from record_alerts.db.base import as_utc
from record_alerts.models.alert import AlertMap, AlertType, MapperAlert, RecordFilter
from record_alerts.models.map_position import MapPosition
from record_alerts.schemas.jobs import PhaseJobMessage
from record_alerts.schemas.leaderboard import LeaderboardEntry
from record_alerts.services.leaderboard_client import LeaderboardClient
from record_alerts.services.runtime_config import RuntimeConfig
from record_alerts.services.subscriptions import fetch_user_alert, fetch_user_alert_maps

logger = logging.getLogger(__name__)

RECORD_FILTER_LENGTH: dict[str, int | None] = {
    RecordFilter.wr.value: 1,
    RecordFilter.top5.value: 5,
    RecordFilter.all.value: None,  # every page, up to the pagination cap
}


@dataclass
class MapRecords:
    map_uid: str
    map_name: str
    records: list[LeaderboardEntry] = field(default_factory=list)


@dataclass
class PhaseOutput:
    content: str = ""
    records_found: int = 0

    @property
    def has_content(self) -> bool:
        return bool(self.content.strip())


def format_race_time(ms: int) -> str:
    """Milliseconds -> ``m:ss.mmm`` (``h:mm:ss.mmm`` past one hour)."""
    seconds, millis = divmod(max(0, ms), 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}.{millis:03d}"
    return f"{minutes}:{seconds:02d}.{millis:03d}"


def _format_timestamp(epoch: int | None) -> str:
    if epoch is None:
        return "unknown"
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def select_new_records(entries: list[LeaderboardEntry], since: datetime) -> list[LeaderboardEntry]:
    cutoff = since.timestamp()
    return [e for e in entries if e.timestamp is not None and e.timestamp >= cutoff]


def format_mapper_section(
    maps: list[MapRecords],
    names: dict[str, str],
    cap: int,
    popular_note: str,
) -> str:
    """One block per map; more than ``cap`` records shows the first ``cap`` plus a ``+N more`` marker."""
    out = ""
    for item in maps:
        if not item.records:
            continue
        out += f"🗺️ Map: {item.map_name}\n"
        for entry in item.records[:cap]:
            out += f"  🏎️ Player: {names.get(entry.account_id) or entry.account_id}\n"
            if entry.zone_name:
                out += f"  📍 Zone: {entry.zone_name}\n"
            out += f"  🥇 Position: {entry.position}\n"
            out += f"  ⏱️ Time: {format_race_time(entry.score)}\n"
            out += f"  📅 Date: {_format_timestamp(entry.timestamp)}\n\n"
        hidden = len(item.records) - cap
        if hidden > 0:
            out += f"  +{hidden} more ({popular_note})\n\n"
    return out.strip()


async def _sync_maps_from_exchange(
    session: AsyncSession, client: LeaderboardClient, alert: MapperAlert, maps: list[AlertMap]
) -> list[AlertMap]:
    """Replace the alert's map set with the author's current Exchange listing. Keeps stored maps on failure."""
    try:
        listed = await client.list_author_maps(alert.username)
    except PipelineError as e:
        logger.warning("Exchange sync for %s failed (%s); using stored maps", alert.username, type(e).__name__)
        return maps
    if not listed:
        return maps
    by_uid = {m.map_uid: m for m in maps}
    listed_uids = {info.map_uid for info in listed}
    for info in listed:
        row = by_uid.get(info.map_uid)
        if row is None:
            row = AlertMap(alert_id=alert.id, map_uid=info.map_uid, map_name=info.name)
            session.add(row)
            by_uid[info.map_uid] = row
        elif info.name and row.map_name != info.name:
            row.map_name = info.name
    for uid, row in list(by_uid.items()):
        if uid not in listed_uids:
            await session.delete(row)
            del by_uid[uid]
    alert.map_count = len(by_uid)
    await session.flush()
    logger.info("Exchange sync for %s: %s maps", alert.username, alert.map_count)
    return sorted(by_uid.values(), key=lambda m: m.map_uid)


async def _upsert_map_position(session: AsyncSession, map_uid: str, position: int, score: int, now: datetime) -> bool:
    """Store the latest Nth-place snapshot. Returns True when it differs from the stored one (or is new)."""
    r = await session.execute(select(MapPosition).where(MapPosition.map_uid == map_uid))
    row = r.scalar_one_or_none()
    if row is None:
        try:
            async with session.begin_nested():
                session.add(
                    MapPosition(map_uid=map_uid, position=position, score=score, last_checked=now, changed_at=now)
                )
            return True
        except IntegrityError:
            r = await session.execute(select(MapPosition).where(MapPosition.map_uid == map_uid))
            row = r.scalar_one()
    changed = row.position != position or row.score != score
    row.position = position
    row.score = score
    row.last_checked = now
    if changed:
        row.changed_at = now
    await session.flush()
    return changed


async def map_changed_within_window(
    session: AsyncSession,
    client: LeaderboardClient,
    map_uid: str,
    *,
    now: datetime,
    window_start: datetime,
) -> bool:
    """
    Inaccurate-mode gate. Probes the API for the Nth-place entry only when the snapshot is older than
    the freshness window; the map needs a full fetch when the snapshot changed inside the record window.
    """
    r = await session.execute(select(MapPosition).where(MapPosition.map_uid == map_uid))
    row = r.scalar_one_or_none()
    fresh_after = now - timedelta(minutes=settings.map_position_fresh_minutes)
    if row is not None and as_utc(row.last_checked) >= fresh_after:
        return as_utc(row.changed_at) >= window_start

    probe_rank = settings.map_position_probe_rank
    entries = await client.get_leaderboard(map_uid, length=probe_rank)
    nth = next((e for e in entries if e.position == probe_rank), entries[-1] if entries else None)
    changed = await _upsert_map_position(
        session, map_uid, nth.position if nth else 0, nth.score if nth else 0, now
    )
    if changed:
        return True
    return row is not None and as_utc(row.changed_at) >= window_start


async def check_mapper_alerts(
    session: AsyncSession,
    client: LeaderboardClient,
    job: PhaseJobMessage,
    config: RuntimeConfig,
    now: datetime | None = None,
) -> PhaseOutput:
    """Collect new records on the user's maps and format the mapper section of the email."""
    now = now or datetime.now(timezone.utc)
    alert = await fetch_user_alert(session, job.user_id)
    if alert is None:
        logger.info("Mapper alert: user_id=%s has no alert", job.user_id)
        return PhaseOutput()

    maps = await fetch_user_alert_maps(session, job.user_id)
    if settings.sync_alert_maps_from_exchange:
        maps = await _sync_maps_from_exchange(session, client, alert, maps)
    if not maps:
        logger.info("Mapper alert: %s has no maps", alert.username)
        return PhaseOutput()

    map_count = alert.map_count or len(maps)
    mode = AlertType.inaccurate if map_count > config.max_maps_per_user else AlertType.accurate
    if alert.alert_type != mode.value:
        logger.info("Mapper alert: %s switches to %s mode (%s maps)", alert.username, mode.value, map_count)
        alert.alert_type = mode.value

    window_start = now - timedelta(hours=settings.record_window_hours)
    length = RECORD_FILTER_LENGTH.get(alert.record_filter, 5)
    results: list[MapRecords] = []
    failures = 0
    last_error: PipelineError | None = None
    skipped = 0

    for m in maps:
        try:
            if mode is AlertType.inaccurate and not await map_changed_within_window(
                session, client, m.map_uid, now=now, window_start=window_start
            ):
                skipped += 1
                continue
            entries = await client.get_leaderboard(m.map_uid, length=length)
        except AuthError:
            raise
        except PipelineError as e:
            failures += 1
            last_error = e
            logger.warning("Mapper alert: map %s for %s failed: %s", m.map_uid, alert.username, type(e).__name__)
            continue
        new = select_new_records(entries, window_start)
        if new:
            results.append(MapRecords(map_uid=m.map_uid, map_name=m.map_name or m.map_uid, records=new))

    if last_error is not None and failures == len(maps):
        raise last_error

    records_found = sum(len(r.records) for r in results)
    logger.info(
        "Mapper alert: %s, %s maps (%s mode, %s skipped, %s failed), %s new records",
        alert.username,
        len(maps),
        mode.value,
        skipped,
        failures,
        records_found,
    )
    if not records_found:
        return PhaseOutput()

    shown_ids = [e.account_id for r in results for e in r.records[: config.max_new_records_per_map]]
    names = await client.resolve_display_names(shown_ids)
    content = format_mapper_section(results, names, config.max_new_records_per_map, config.popular_map_note())
    return PhaseOutput(content=content, records_found=records_found)
