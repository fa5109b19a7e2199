"""Per-user, per-day accumulator of phase output awaiting a single composed email."""

from __future__ import annotations

import enum
from datetime import date, datetime
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from record_alerts.db.base import Base, utcnow


class PendingEmailStatus(str, enum.Enum):
    pending = "pending"
    sending = "sending"
    sent = "sent"
    skipped = "skipped"
    failed = "failed"


class PendingEmail(Base):
    __tablename__ = "pending_emails"
    __table_args__ = (
        UniqueConstraint("user_id", "processing_date", name="uq_pending_email_user_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    processing_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    mapper_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    driver_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    mapper_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    driver_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mapper_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    driver_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PendingEmailStatus.pending.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
