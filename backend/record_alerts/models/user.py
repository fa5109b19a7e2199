from __future__ import annotations

from datetime import datetime
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship
from record_alerts.db.base import Base, utcnow


class User(Base):
    """Account owned by the auth/CRUD subsystem; the pipeline only reads it."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tm_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tm_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    alert: Mapped["MapperAlert | None"] = relationship(
        "MapperAlert", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    driver_notifications: Mapped[list["DriverNotification"]] = relationship(
        "DriverNotification", back_populates="user", cascade="all, delete-orphan"
    )
    notification_history: Mapped[list["NotificationHistory"]] = relationship(
        "NotificationHistory", back_populates="user", cascade="all, delete-orphan"
    )
