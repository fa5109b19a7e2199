"""Daily cycle fan-out: subscribers, ordering, dedup and per-user enqueue failures."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select, update

from record_alerts.models.alert import MapperAlert
from record_alerts.models.notification_history import NotificationStatus, NotificationType
from record_alerts.models.phase_job import PhaseJob
from record_alerts.models.user import User
from record_alerts.services import history
from record_alerts.services.job_queue import enqueue_phase_job
from record_alerts.services.scheduler import run_daily_cycle
from record_alerts.services.subscriptions import fetch_validated_subscribers

NOW = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)
DAY = NOW.date()


async def _jobs(db) -> list[PhaseJob]:
    async with db() as session:
        r = await session.execute(select(PhaseJob).order_by(PhaseJob.id))
        return list(r.scalars().all())


@pytest.mark.asyncio
async def test_subscribers_include_mapper_and_driver_only_users(db, seed):
    alice = await seed("alice", maps=[("m1", "Map One")])
    bob = await seed("bob", drivers=[{"map_uid": "M1", "position": 3}])
    await seed("carol", drivers=[{"map_uid": "M2", "position": 2, "status": "inactive"}])
    both = await seed("dave", maps=[("m2", "Map Two")], drivers=[{"map_uid": "M1", "position": 1}])

    async with db() as session:
        subscribers = await fetch_validated_subscribers(session)
    assert [s.user_id for s in subscribers] == [alice, both, bob]
    assert subscribers[2].username == "bob"
    assert subscribers[2].email == "bob@example.com"


@pytest.mark.asyncio
async def test_subscribers_without_valid_email_are_skipped(db, seed):
    alice = await seed("alice", maps=[("m1", "Map One")])
    bob = await seed("bob", drivers=[{"map_uid": "M1", "position": 3}])
    async with db() as session:
        await session.execute(update(MapperAlert).where(MapperAlert.user_id == alice).values(email="not-an-email"))
        await session.execute(update(User).where(User.id == bob).values(email=""))
        await session.commit()
        assert await fetch_validated_subscribers(session) == []


@pytest.mark.asyncio
async def test_daily_cycle_enqueues_two_jobs_per_user_phase_one_first(db, seed):
    users = [
        await seed("alice", maps=[("m1", "Map One")]),
        await seed("bob", drivers=[{"map_uid": "M1", "position": 3}]),
        await seed("carol", maps=[("m2", "Map Two")]),
    ]

    count = await run_daily_cycle(db, today=DAY, now=NOW)

    assert count == 3
    jobs = await _jobs(db)
    assert len(jobs) == 6
    phase_one = [j for j in jobs if j.phase == 1]
    phase_two = [j for j in jobs if j.phase == 2]
    assert {j.user_id for j in phase_one} == set(users)
    assert {j.user_id for j in phase_two} == set(users)
    assert max(j.id for j in phase_one) < min(j.id for j in phase_two)
    assert phase_one[0].payload["type"] == "map_alert_check"
    assert phase_one[0].payload["processing_date"] == "2026-10-18"
    assert phase_two[0].payload["type"] == "driver_notification_check"
    assert phase_two[0].dedup_key == f"{phase_two[0].user_id}:2:2026-10-18"


@pytest.mark.asyncio
async def test_daily_cycle_rerun_is_deduplicated(db, seed):
    await seed("alice", maps=[("m1", "Map One")])
    await seed("bob", drivers=[{"map_uid": "M1", "position": 3}])

    assert await run_daily_cycle(db, today=DAY, now=NOW) == 2
    assert await run_daily_cycle(db, today=DAY, now=NOW + timedelta(minutes=5)) == 2
    assert len(await _jobs(db)) == 4

    # Next day gets its own jobs
    await run_daily_cycle(db, today=DAY + timedelta(days=1), now=NOW + timedelta(days=1))
    assert len(await _jobs(db)) == 8


@pytest.mark.asyncio
async def test_enqueue_failure_for_one_user_does_not_stop_others(db, seed):
    alice = await seed("alice", maps=[("m1", "Map One")])
    bob = await seed("bob", maps=[("m2", "Map Two")])
    carol = await seed("carol", maps=[("m3", "Map Three")])

    async def flaky_enqueue(session, message, now=None):
        if message.user_id == bob and message.phase == 1:
            raise RuntimeError("queue unavailable")
        return await enqueue_phase_job(session, message, now)

    with patch("record_alerts.services.scheduler.enqueue_phase_job", side_effect=flaky_enqueue):
        count = await run_daily_cycle(db, today=DAY, now=NOW)

    assert count == 2
    jobs = await _jobs(db)
    assert len(jobs) == 5
    assert {(j.user_id, j.phase) for j in jobs} == {(alice, 1), (carol, 1), (alice, 2), (bob, 2), (carol, 2)}


@pytest.mark.asyncio
async def test_daily_cycle_without_subscribers_enqueues_nothing(db):
    assert await run_daily_cycle(db, today=DAY, now=NOW) == 0
    assert await _jobs(db) == []


@pytest.mark.asyncio
async def test_daily_cycle_reconciles_stale_processing_rows(db, seed):
    alice = await seed("alice", maps=[("m1", "Map One")])
    yesterday = date(2026, 10, 17)
    async with db() as session:
        await history.begin(session, alice, "alice", NotificationType.mapper_alert, yesterday)
        await session.commit()

    await run_daily_cycle(db, today=DAY, now=NOW)

    async with db() as session:
        row = await history.get_row(session, alice, NotificationType.mapper_alert, yesterday)
    assert row.status == NotificationStatus.technical_error.value
