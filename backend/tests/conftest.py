"""Pytest configuration and shared fixtures for pipeline tests."""

import os
import tempfile

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test DB and API settings before record_alerts imports so config/engine use them
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "record_alerts_test.db"),
)
os.environ.setdefault("ENCRYPTION_KEY", "")
os.environ.setdefault("LEADERBOARD_CACHE_ENABLED", "false")
os.environ.setdefault("LEADERBOARD_REQUESTS_PER_SECOND", "0")
os.environ.setdefault("NADEO_BASIC_AUTHORIZATION", "dGVzdDp0ZXN0")
os.environ.setdefault("TRACKMANIA_OAUTH_CLIENT_ID", "test-client")
os.environ.setdefault("TRACKMANIA_OAUTH_CLIENT_SECRET", "test-secret")
os.environ.setdefault("SYNC_ALERT_MAPS_FROM_EXCHANGE", "false")

from record_alerts.db.base import Base
from record_alerts.db.session import async_session_maker, engine
from record_alerts.models.alert import AlertMap, MapperAlert
from record_alerts.models.driver_notification import DriverNotification
from record_alerts.models.user import User
from record_alerts.schemas.leaderboard import LeaderboardEntry

pytest_plugins = ["pytest_asyncio"]


def entry(account_id: str, position: int, score: int = 60000, timestamp: int | None = None, zone: str | None = "World"):
    return LeaderboardEntry(account_id=account_id, position=position, score=score, timestamp=timestamp, zone_name=zone)


class FakeLeaderboardClient:
    """In-memory stand-in for LeaderboardClient used by phase and pipeline tests."""

    def __init__(self, boards=None, names=None, errors=None):
        self.boards: dict[str, list[LeaderboardEntry]] = boards or {}
        self.names: dict[str, str] = names or {}
        self.errors: dict[str, Exception] = errors or {}
        self.calls: list[tuple[str, int | None]] = []
        self.name_calls: list[list[str]] = []

    async def get_leaderboard(self, map_uids, group=None, length=None):
        self.calls.append((map_uids, length))
        if map_uids in self.errors:
            raise self.errors[map_uids]
        entries = sorted(self.boards.get(map_uids, []), key=lambda e: e.position)
        return entries if length is None else entries[:length]

    async def resolve_display_names(self, account_ids):
        self.name_calls.append(list(account_ids))
        return {a: self.names[a] for a in account_ids if a in self.names}

    async def list_author_maps(self, author):
        return []


class FakeTransport:
    """Records sent emails; raises ``error`` when set."""

    def __init__(self, error: Exception | None = None):
        self.sent: list[tuple[str, str, str]] = []
        self.error = error

    async def __call__(self, to: str, subject: str, body: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((to, subject, body))


@pytest.fixture
def fake_client_cls():
    return FakeLeaderboardClient


@pytest.fixture
def make_entry():
    return entry


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def failing_transport():
    from record_alerts.core.errors import EmailDeliveryError

    return FakeTransport(error=EmailDeliveryError("SMTP delivery failed: SMTPServerDisconnected"))


@pytest_asyncio.fixture
async def db():
    """Fresh schema per test; yields the session maker."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_session_maker
    await engine.dispose()


@pytest_asyncio.fixture
async def seed(db):
    """Factory inserting users with an optional mapper alert and driver notifications."""

    async def _seed(
        username: str,
        *,
        maps: list[tuple[str, str]] | None = None,
        record_filter: str = "top5",
        map_count: int | None = None,
        drivers: list[dict] | None = None,
        account_id: str | None = None,
    ) -> int:
        async with db() as session:
            user = User(
                username=username,
                email=f"{username}@example.com",
                tm_username=username,
                tm_account_id=account_id or f"acc-{username}",
            )
            session.add(user)
            await session.flush()
            if maps is not None:
                alert = MapperAlert(
                    user_id=user.id,
                    username=username,
                    email=user.email,
                    alert_type="accurate",
                    record_filter=record_filter,
                    map_count=len(maps) if map_count is None else map_count,
                )
                session.add(alert)
                await session.flush()
                for uid, name in maps:
                    session.add(AlertMap(alert_id=alert.id, map_uid=uid, map_name=name))
            for d in drivers or []:
                session.add(
                    DriverNotification(
                        user_id=user.id,
                        map_uid=d["map_uid"],
                        map_name=d.get("map_name", d["map_uid"]),
                        tm_account_id=user.tm_account_id,
                        current_position=d["position"],
                        personal_best_score=d.get("score", 60000),
                        status=d.get("status", "active"),
                    )
                )
            await session.commit()
            return user.id

    return _seed


@pytest_asyncio.fixture
async def client():
    """AsyncClient against the ASGI app; lifespan (scheduler, init_db) is not run."""
    from record_alerts.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
