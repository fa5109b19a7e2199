"""Operator-tunable values from the admin_config table, falling back to settings defaults."""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from record_alerts.config import settings
from record_alerts.models.admin_config import AdminConfig

logger = logging.getLogger(__name__)

KEY_MAX_MAPS_PER_USER = "max_maps_per_user"
KEY_MAX_NEW_RECORDS_PER_MAP = "max_new_records_per_map"
KEY_POPULAR_MAP_MESSAGE = "popular_map_message"


@dataclass(frozen=True)
class RuntimeConfig:
    max_maps_per_user: int
    max_new_records_per_map: int
    popular_map_message: str

    def popular_map_note(self) -> str:
        try:
            return self.popular_map_message.format(cap=self.max_new_records_per_map)
        except (KeyError, IndexError, ValueError):
            return self.popular_map_message


def _as_positive_int(key: str, raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("admin_config %s=%r is not an integer; using default %s", key, raw, default)
        return default
    if value <= 0:
        logger.warning("admin_config %s=%s must be positive; using default %s", key, value, default)
        return default
    return value


async def load_runtime_config(session: AsyncSession) -> RuntimeConfig:
    r = await session.execute(
        select(AdminConfig.config_key, AdminConfig.config_value).where(
            AdminConfig.config_key.in_(
                [KEY_MAX_MAPS_PER_USER, KEY_MAX_NEW_RECORDS_PER_MAP, KEY_POPULAR_MAP_MESSAGE]
            )
        )
    )
    values = {row[0]: row[1] for row in r.all()}
    return RuntimeConfig(
        max_maps_per_user=_as_positive_int(
            KEY_MAX_MAPS_PER_USER, values.get(KEY_MAX_MAPS_PER_USER), settings.max_maps_per_user
        ),
        max_new_records_per_map=_as_positive_int(
            KEY_MAX_NEW_RECORDS_PER_MAP, values.get(KEY_MAX_NEW_RECORDS_PER_MAP), settings.max_new_records_per_map
        ),
        popular_map_message=values.get(KEY_POPULAR_MAP_MESSAGE) or settings.popular_map_message,
    )
