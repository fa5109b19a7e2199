"""Shared Nth-place snapshot per map, used by inaccurate-mode mapper alerts."""

from datetime import datetime
from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from record_alerts.db.base import Base, utcnow


class MapPosition(Base):
    __tablename__ = "map_positions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    map_uid: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    last_checked: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
