from __future__ import annotations

import enum
from datetime import datetime
from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from record_alerts.db.base import Base, utcnow


class DriverNotificationStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"


class DriverNotification(Base):
    """Tracks one user's leaderboard position on one map while they stay inside the top-N."""

    __tablename__ = "driver_notifications"
    __table_args__ = (
        UniqueConstraint("user_id", "map_uid", name="uq_driver_notification_user_map"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    map_uid: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    map_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    tm_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    current_position: Mapped[int] = mapped_column(Integer, nullable=False)
    personal_best_score: Mapped[int] = mapped_column(Integer, nullable=False)  # milliseconds
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DriverNotificationStatus.active.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_checked: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    user: Mapped["User"] = relationship("User", back_populates="driver_notifications")
