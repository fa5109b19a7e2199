"""Read-side queries over subscription data owned by the CRUD subsystem."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from record_alerts.models.alert import AlertMap, MapperAlert
from record_alerts.models.driver_notification import DriverNotification, DriverNotificationStatus
from record_alerts.models.user import User
from record_alerts.schemas.jobs import Subscriber


async def fetch_validated_subscribers(session: AsyncSession) -> list[Subscriber]:
    """
    Every user with a mapper alert or an active driver notification, and a usable email.
    Mapper-alert subscribers are listed first, ordered by user id.
    """
    subscribers: dict[int, Subscriber] = {}

    r = await session.execute(
        select(MapperAlert.user_id, MapperAlert.username, MapperAlert.email).order_by(MapperAlert.user_id)
    )
    for user_id, username, email in r.all():
        if email and "@" in email and username:
            subscribers[user_id] = Subscriber(user_id=user_id, username=username, email=email)

    r = await session.execute(
        select(User.id, User.tm_username, User.username, User.email)
        .join(DriverNotification, DriverNotification.user_id == User.id)
        .where(DriverNotification.status == DriverNotificationStatus.active.value)
        .distinct()
        .order_by(User.id)
    )
    for user_id, tm_username, username, email in r.all():
        if user_id in subscribers or not email or "@" not in email:
            continue
        name = tm_username or username
        if not name:
            continue
        subscribers[user_id] = Subscriber(user_id=user_id, username=name, email=email)

    return list(subscribers.values())


async def fetch_user_alert(session: AsyncSession, user_id: int) -> MapperAlert | None:
    r = await session.execute(select(MapperAlert).where(MapperAlert.user_id == user_id))
    return r.scalar_one_or_none()


async def fetch_user_alert_maps(session: AsyncSession, user_id: int) -> list[AlertMap]:
    r = await session.execute(
        select(AlertMap)
        .join(MapperAlert, MapperAlert.id == AlertMap.alert_id)
        .where(MapperAlert.user_id == user_id)
        .order_by(AlertMap.map_uid)
    )
    return list(r.scalars().all())


async def fetch_user_driver_notifications(session: AsyncSession, user_id: int) -> list[DriverNotification]:
    """Active notifications only; inactive rows are never re-checked."""
    r = await session.execute(
        select(DriverNotification)
        .where(
            DriverNotification.user_id == user_id,
            DriverNotification.status == DriverNotificationStatus.active.value,
        )
        .order_by(DriverNotification.map_uid, DriverNotification.id)
    )
    return list(r.scalars().all())
