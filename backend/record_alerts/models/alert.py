"""Mapper alert subscription and the maps it watches."""

from __future__ import annotations

import enum
from datetime import datetime
from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from record_alerts.db.base import Base, utcnow


class AlertType(str, enum.Enum):
    accurate = "accurate"
    inaccurate = "inaccurate"


class RecordFilter(str, enum.Enum):
    top5 = "top5"
    wr = "wr"
    all = "all"


class MapperAlert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    username: Mapped[str] = mapped_column(String(255), nullable=False)  # Trackmania username of the map author
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertType.accurate.value)
    record_filter: Mapped[str] = mapped_column(String(10), nullable=False, default=RecordFilter.top5.value)
    map_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="alert")
    maps: Mapped[list["AlertMap"]] = relationship(
        "AlertMap", back_populates="alert", cascade="all, delete-orphan", passive_deletes=True
    )


class AlertMap(Base):
    __tablename__ = "alert_maps"

    alert_id: Mapped[int] = mapped_column(ForeignKey("alerts.id", ondelete="CASCADE"), primary_key=True, index=True)
    map_uid: Mapped[str] = mapped_column(String(255), primary_key=True)
    map_name: Mapped[str | None] = mapped_column(String(500), nullable=True)

    alert: Mapped["MapperAlert"] = relationship("MapperAlert", back_populates="maps")
