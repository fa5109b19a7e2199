"""End-to-end daily pipeline for one user: both phases, history ledger and the composed email."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from record_alerts.core.errors import EmailDeliveryError, TransientApiError
from record_alerts.models.driver_notification import DriverNotification
from record_alerts.models.notification_history import NotificationHistory, NotificationStatus, NotificationType
from record_alerts.schemas.jobs import JobType, PhaseJobMessage, Subscriber
from record_alerts.services import history
from record_alerts.services.email_composer import compose_overdue
from record_alerts.services.phase_processor import process_phase_job
from record_alerts.services.subscriptions import fetch_validated_subscribers

NOW = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)
RECENT = int((NOW - timedelta(hours=3)).timestamp())
OLD = int((NOW - timedelta(days=2)).timestamp())


def _jobs(user_id: int, username: str, now: datetime = NOW) -> tuple[PhaseJobMessage, PhaseJobMessage]:
    subscriber = Subscriber(user_id=user_id, username=username, email=f"{username}@example.com")
    return (
        PhaseJobMessage.for_subscriber(subscriber, JobType.map_alert_check, now),
        PhaseJobMessage.for_subscriber(subscriber, JobType.driver_notification_check, now),
    )


async def _run_both(db, client, user_id, username, transport, now=NOW):
    phase1, phase2 = _jobs(user_id, username, now)
    first = await process_phase_job(db, client, phase1, now=now, transport=transport)
    second = await process_phase_job(db, client, phase2, now=now, transport=transport)
    return first, second


async def _history(db, user_id, ntype, day=NOW.date()) -> NotificationHistory:
    async with db() as session:
        return await history.get_row(session, user_id, ntype, day)


@pytest.mark.asyncio
async def test_mapper_only_user_gets_one_mapper_email(db, seed, fake_client_cls, make_entry, transport):
    alice = await seed("alice", maps=[("m1", "Spring Loop")])
    client = fake_client_cls(
        boards={
            "m1": [
                make_entry("p1", 1, 42000, RECENT),
                make_entry("p2", 2, 42500, RECENT),
                make_entry("p3", 3, 43000, OLD),
            ]
        },
        names={"p1": "Speedy", "p2": "Drifter"},
    )

    first, second = await _run_both(db, client, alice, "alice", transport)

    # Phase 1 stays open until the email goes out after phase 2
    assert first == NotificationStatus.processing
    assert second == NotificationStatus.no_new_times
    mapper = await _history(db, alice, NotificationType.mapper_alert)
    driver = await _history(db, alice, NotificationType.driver_notification)
    assert mapper.status == NotificationStatus.sent.value
    assert mapper.records_found == 2
    assert driver.status == NotificationStatus.no_new_times.value
    assert driver.message == "No new times found"

    assert len(transport.sent) == 1
    to, subject, body = transport.sent[0]
    assert to == "alice@example.com"
    assert subject == "New times in alice's maps"
    assert "🎯 MAPPER ALERTS" in body
    assert "Speedy" in body and "Drifter" in body
    assert "DRIVER NOTIFICATIONS" not in body


@pytest.mark.asyncio
async def test_driver_drop_out_deactivates_and_emails(db, seed, fake_client_cls, make_entry, transport):
    bob = await seed("bob", drivers=[{"map_uid": "M1", "position": 3}])
    client = fake_client_cls(boards={"M1": [make_entry(f"other-{i}", i) for i in range(1, 6)]})

    first, second = await _run_both(db, client, bob, "bob", transport)

    assert first == NotificationStatus.no_new_times
    assert second == NotificationStatus.sent
    driver = await _history(db, bob, NotificationType.driver_notification)
    assert driver.records_found == 1
    async with db() as session:
        row = (await session.execute(select(DriverNotification))).scalar_one()
    assert row.status == "inactive"

    assert len(transport.sent) == 1
    _, subject, body = transport.sent[0]
    assert subject == "Position Changes on Tracked Maps"
    assert "Map: M1\nYou dropped out of the top 5 (was #3)" in body


@pytest.mark.asyncio
async def test_both_sections_produce_one_combined_email(db, seed, fake_client_cls, make_entry, transport):
    dave = await seed("dave", maps=[("m1", "Spring Loop")], drivers=[{"map_uid": "M9", "position": 2}])
    client = fake_client_cls(
        boards={
            "m1": [make_entry("p1", 1, 42000, RECENT)],
            "M9": [make_entry("acc-dave", 1, 39000), make_entry("x", 2, 39500)],
        }
    )

    first, second = await _run_both(db, client, dave, "dave", transport)

    assert second == NotificationStatus.sent
    assert (await _history(db, dave, NotificationType.mapper_alert)).status == NotificationStatus.sent.value
    assert len(transport.sent) == 1
    _, subject, body = transport.sent[0]
    assert subject == "Daily Update: New Records & Position Changes"
    assert "Position changed: #2 → #1" in body


@pytest.mark.asyncio
async def test_rerun_for_same_day_does_nothing(db, seed, fake_client_cls, make_entry, transport):
    alice = await seed("alice", maps=[("m1", "Spring Loop")])
    client = fake_client_cls(boards={"m1": [make_entry("p1", 1, 42000, RECENT)]})
    await _run_both(db, client, alice, "alice", transport)
    calls = list(client.calls)

    first, second = await _run_both(db, client, alice, "alice", transport)

    assert first == NotificationStatus.sent
    assert second == NotificationStatus.no_new_times
    assert client.calls == calls
    assert len(transport.sent) == 1
    async with db() as session:
        r = await session.execute(select(NotificationHistory))
        assert len(r.scalars().all()) == 2


@pytest.mark.asyncio
async def test_delivery_failure_is_technical_error(db, seed, fake_client_cls, make_entry, failing_transport):
    alice = await seed("alice", maps=[("m1", "Spring Loop")])
    client = fake_client_cls(boards={"m1": [make_entry("p1", 1, 42000, RECENT)]})

    first, second = await _run_both(db, client, alice, "alice", failing_transport)

    mapper = await _history(db, alice, NotificationType.mapper_alert)
    assert mapper.status == NotificationStatus.technical_error.value
    assert mapper.message == EmailDeliveryError.public_message
    assert second == NotificationStatus.no_new_times


@pytest.mark.asyncio
async def test_phase_failure_is_recorded_and_other_phase_still_runs(
    db, seed, fake_client_cls, make_entry, transport
):
    dave = await seed("dave", maps=[("m1", "Spring Loop")], drivers=[{"map_uid": "M9", "position": 2}])
    client = fake_client_cls(
        boards={"M9": [make_entry("acc-dave", 1, 39000)]},
        errors={"m1": TransientApiError("leaderboard: HTTP 503 secret-detail", status_code=503)},
    )

    first, second = await _run_both(db, client, dave, "dave", transport)

    assert first == NotificationStatus.technical_error
    mapper = await _history(db, dave, NotificationType.mapper_alert)
    assert mapper.message == TransientApiError.public_message
    assert "secret-detail" not in mapper.message
    assert second == NotificationStatus.sent
    assert len(transport.sent) == 1
    assert "MAPPER ALERTS" not in transport.sent[0][2]


@pytest.mark.asyncio
async def test_unexpected_error_uses_generic_message(db, seed, fake_client_cls, transport):
    alice = await seed("alice", maps=[("m1", "Spring Loop")])
    client = fake_client_cls()

    async def broken(*args, **kwargs):
        raise RuntimeError("connection string postgres://user:pw@host")

    client.get_leaderboard = broken
    first, second = await _run_both(db, client, alice, "alice", transport)

    mapper = await _history(db, alice, NotificationType.mapper_alert)
    assert first == NotificationStatus.technical_error
    assert mapper.message == "Unexpected processing error"
    assert second == NotificationStatus.no_new_times
    assert transport.sent == []


@pytest.mark.asyncio
async def test_inactive_notification_is_never_reactivated(db, seed, fake_client_cls, make_entry, transport):
    bob = await seed("bob", drivers=[{"map_uid": "M1", "position": 3}])
    client = fake_client_cls(boards={"M1": [make_entry(f"other-{i}", i) for i in range(1, 6)]})
    await _run_both(db, client, bob, "bob", transport)

    # Back in the top 5 the next day
    client.boards["M1"] = [make_entry("acc-bob", 2)]
    client.calls.clear()
    tomorrow = NOW + timedelta(days=1)
    _, second = await _run_both(db, client, bob, "bob", transport, now=tomorrow)

    assert second == NotificationStatus.no_new_times
    assert client.calls == []
    async with db() as session:
        row = (await session.execute(select(DriverNotification))).scalar_one()
        assert row.status == "inactive"
        assert await fetch_validated_subscribers(session) == []
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_forced_email_leaves_unfinished_phase_open(db, seed, fake_client_cls, make_entry, transport):
    dave = await seed("dave", maps=[("m1", "Spring Loop")], drivers=[{"map_uid": "M9", "position": 2}])
    client = fake_client_cls(
        boards={
            "m1": [make_entry("p1", 1, 42000, RECENT)],
            "M9": [make_entry("acc-dave", 1, 39000), make_entry("x", 2, 39500)],
        }
    )
    phase1, phase2 = _jobs(dave, "dave")
    assert await process_phase_job(db, client, phase1, now=NOW, transport=transport) == NotificationStatus.processing
    # Driver job opened its row, then the worker abandoned it
    async with db() as session:
        await history.begin(session, dave, "dave", NotificationType.driver_notification, NOW.date())
        await session.commit()

    await compose_overdue(db, now=datetime.now(timezone.utc) + timedelta(hours=3), transport=transport)

    assert len(transport.sent) == 1
    assert transport.sent[0][1] == "New times in dave's maps"
    assert (await _history(db, dave, NotificationType.mapper_alert)).status == NotificationStatus.sent.value
    driver = await _history(db, dave, NotificationType.driver_notification)
    assert driver.status == NotificationStatus.processing.value
    assert driver.message is None

    # Redelivered: the check runs, but the change waits for the next email
    status = await process_phase_job(db, client, phase2, now=NOW, transport=transport)
    assert status == NotificationStatus.technical_error
    assert [uid for uid, _ in client.calls][-1] == "M9"
    async with db() as session:
        row = (await session.execute(select(DriverNotification))).scalar_one()
        assert row.status == "active"
        assert row.current_position == 2

    _, second = await _run_both(db, client, dave, "dave", transport, now=NOW + timedelta(days=1))
    assert second == NotificationStatus.sent
    assert len(transport.sent) == 2
    assert transport.sent[1][1] == "Position Changes on Tracked Maps"
    assert "Position changed: #2 → #1" in transport.sent[1][2]
    async with db() as session:
        row = (await session.execute(select(DriverNotification))).scalar_one()
        assert row.current_position == 1


@pytest.mark.asyncio
async def test_driver_phase_after_closed_email_keeps_drop_out_for_next_day(
    db, seed, fake_client_cls, make_entry, transport
):
    bob = await seed("bob", maps=[("m1", "Spring Loop")], drivers=[{"map_uid": "M1", "position": 3}])
    client = fake_client_cls(
        boards={
            "m1": [make_entry("p1", 1, 42000, RECENT)],
            "M1": [make_entry(f"other-{i}", i) for i in range(1, 6)],
        }
    )
    phase1, phase2 = _jobs(bob, "bob")
    await process_phase_job(db, client, phase1, now=NOW, transport=transport)
    await compose_overdue(db, now=datetime.now(timezone.utc) + timedelta(hours=3), transport=transport)
    assert len(transport.sent) == 1

    late = await process_phase_job(db, client, phase2, now=NOW, transport=transport)

    assert late == NotificationStatus.technical_error
    driver = await _history(db, bob, NotificationType.driver_notification)
    assert driver.message == "Daily email already processed"
    assert driver.records_found == 0
    async with db() as session:
        row = (await session.execute(select(DriverNotification))).scalar_one()
        assert row.status == "active"
        assert row.current_position == 3

    _, second = await _run_both(db, client, bob, "bob", transport, now=NOW + timedelta(days=1))
    assert second == NotificationStatus.sent
    assert len(transport.sent) == 2
    assert "You dropped out of the top 5 (was #3)" in transport.sent[1][2]
    async with db() as session:
        row = (await session.execute(select(DriverNotification))).scalar_one()
        assert row.status == "inactive"
