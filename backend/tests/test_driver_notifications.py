"""Driver notification phase: position changes, drop-outs and row updates."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from record_alerts.core.errors import TransientApiError
from record_alerts.models.driver_notification import DriverNotification
from record_alerts.schemas.jobs import JobType, PhaseJobMessage, Subscriber
from record_alerts.services.driver_notifications import check_driver_notifications

NOW = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)


def _job(user_id: int, username: str = "bob") -> PhaseJobMessage:
    subscriber = Subscriber(user_id=user_id, username=username, email=f"{username}@example.com")
    return PhaseJobMessage.for_subscriber(subscriber, JobType.driver_notification_check, NOW)


async def _rows(db) -> dict[str, DriverNotification]:
    async with db() as session:
        r = await session.execute(select(DriverNotification))
        return {row.map_uid: row for row in r.scalars().all()}


@pytest.mark.asyncio
async def test_position_change_updates_row_and_formats_line(db, seed, fake_client_cls, make_entry):
    user_id = await seed("bob", drivers=[{"map_uid": "M1", "position": 3, "score": 50300, "map_name": "Map One"}])
    client = fake_client_cls(
        boards={
            "M1": [
                make_entry("x", 1, 50000),
                make_entry("y", 2, 50100),
                make_entry("z", 3, 50200),
                make_entry("acc-bob", 4, 50300),
                make_entry("w", 5, 50400),
            ]
        }
    )
    async with db() as session:
        output = await check_driver_notifications(session, client, _job(user_id), NOW)
        await session.commit()

    assert output.content == "Map: Map One\nPosition changed: #3 → #4\nTime: 0:50.300"
    assert output.records_found == 1
    row = (await _rows(db))["M1"]
    assert row.current_position == 4
    assert row.status == "active"
    assert client.calls == [("M1", 5)]


@pytest.mark.asyncio
async def test_drop_out_deactivates_row(db, seed, fake_client_cls, make_entry):
    user_id = await seed("bob", drivers=[{"map_uid": "M1", "position": 3, "map_name": "Map One"}])
    client = fake_client_cls(boards={"M1": [make_entry(f"other-{i}", i) for i in range(1, 6)]})
    async with db() as session:
        output = await check_driver_notifications(session, client, _job(user_id), NOW)
        await session.commit()

    assert output.content == "Map: Map One\nYou dropped out of the top 5 (was #3)"
    row = (await _rows(db))["M1"]
    assert row.status == "inactive"
    assert row.current_position == 3


@pytest.mark.asyncio
async def test_unchanged_position_produces_no_line(db, seed, fake_client_cls, make_entry):
    user_id = await seed("bob", drivers=[{"map_uid": "M1", "position": 2, "score": 50100}])
    client = fake_client_cls(boards={"M1": [make_entry("x", 1, 50000), make_entry("acc-bob", 2, 50050)]})
    async with db() as session:
        output = await check_driver_notifications(session, client, _job(user_id), NOW)
        await session.commit()

    assert not output.has_content
    assert output.records_found == 0
    row = (await _rows(db))["M1"]
    assert row.current_position == 2
    # Improved time at the same rank is stored silently
    assert row.personal_best_score == 50050


@pytest.mark.asyncio
async def test_inactive_rows_are_not_checked(db, seed, fake_client_cls, make_entry):
    user_id = await seed(
        "bob",
        drivers=[
            {"map_uid": "M1", "position": 2, "status": "inactive"},
            {"map_uid": "M2", "position": 1},
        ],
    )
    client = fake_client_cls(boards={"M1": [make_entry("acc-bob", 1)], "M2": [make_entry("acc-bob", 1)]})
    async with db() as session:
        output = await check_driver_notifications(session, client, _job(user_id), NOW)
        await session.commit()

    assert client.calls == [("M2", 5)]
    assert not output.has_content
    assert (await _rows(db))["M1"].status == "inactive"


@pytest.mark.asyncio
async def test_several_changes_are_joined_and_counted(db, seed, fake_client_cls, make_entry):
    user_id = await seed(
        "bob",
        drivers=[
            {"map_uid": "M1", "position": 1, "map_name": "Map One"},
            {"map_uid": "M2", "position": 4, "map_name": "Map Two"},
        ],
    )
    client = fake_client_cls(
        boards={
            "M1": [make_entry("x", 1, 40000), make_entry("acc-bob", 2, 40100)],
            "M2": [make_entry(f"o{i}", i) for i in range(1, 6)],
        }
    )
    async with db() as session:
        output = await check_driver_notifications(session, client, _job(user_id), NOW)

    assert output.records_found == 2
    first, second = output.content.split("\n\n")
    assert first.startswith("Map: Map One\nPosition changed: #1 → #2")
    assert second == "Map: Map Two\nYou dropped out of the top 5 (was #4)"


@pytest.mark.asyncio
async def test_last_checked_never_moves_backwards(db, seed, fake_client_cls, make_entry):
    user_id = await seed("bob", drivers=[{"map_uid": "M1", "position": 1}])
    client = fake_client_cls(boards={"M1": [make_entry("acc-bob", 1)]})
    async with db() as session:
        await session.execute(update(DriverNotification).values(last_checked=NOW - timedelta(days=1)))
        await session.commit()
        await check_driver_notifications(session, client, _job(user_id), NOW)
        await session.commit()
        await check_driver_notifications(session, client, _job(user_id), NOW - timedelta(hours=1))
        await session.commit()

    row = (await _rows(db))["M1"]
    assert row.last_checked.replace(tzinfo=timezone.utc) == NOW


@pytest.mark.asyncio
async def test_failed_map_is_skipped_when_others_succeed(db, seed, fake_client_cls, make_entry):
    user_id = await seed(
        "bob",
        drivers=[{"map_uid": "M1", "position": 1}, {"map_uid": "M2", "position": 3, "map_name": "Map Two"}],
    )
    client = fake_client_cls(
        boards={"M2": []},
        errors={"M1": TransientApiError("leaderboard: HTTP 503", status_code=503)},
    )
    async with db() as session:
        output = await check_driver_notifications(session, client, _job(user_id), NOW)
    assert output.content == "Map: Map Two\nYou dropped out of the top 5 (was #3)"

    failing = fake_client_cls(errors={"M1": TransientApiError("down"), "M2": TransientApiError("down")})
    async with db() as session:
        with pytest.raises(TransientApiError):
            await check_driver_notifications(session, failing, _job(user_id), NOW)
