"""Audit/idempotency ledger: one row per (user, notification type, processing date)."""

from __future__ import annotations

import enum
from datetime import date, datetime
from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from record_alerts.db.base import Base, utcnow


class NotificationType(str, enum.Enum):
    mapper_alert = "mapper_alert"
    driver_notification = "driver_notification"


class NotificationStatus(str, enum.Enum):
    sent = "sent"
    no_new_times = "no_new_times"
    technical_error = "technical_error"
    processing = "processing"

    @property
    def is_terminal(self) -> bool:
        return self is not NotificationStatus.processing


class NotificationHistory(Base):
    __tablename__ = "notification_history"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "notification_type", "processing_date", name="uq_notification_history_user_type_date"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    records_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="notification_history")
