"""Pydantic schemas for the phase job queue message."""

from __future__ import annotations

import enum
from datetime import date, datetime

from pydantic import BaseModel, Field, model_validator

from record_alerts.models.notification_history import NotificationType


class JobType(str, enum.Enum):
    map_alert_check = "map_alert_check"
    driver_notification_check = "driver_notification_check"


PHASE_BY_TYPE = {JobType.map_alert_check: 1, JobType.driver_notification_check: 2}
NOTIFICATION_TYPE_BY_JOB = {
    JobType.map_alert_check: NotificationType.mapper_alert,
    JobType.driver_notification_check: NotificationType.driver_notification,
}


class Subscriber(BaseModel):
    user_id: int
    username: str
    email: str


class PhaseJobMessage(BaseModel):
    """Queue payload for one (user, phase) check. Delivered at least once."""

    user_id: int
    username: str = Field(min_length=1)
    email: str = Field(min_length=3)
    type: JobType
    phase: int = Field(ge=1, le=2)
    timestamp: datetime
    processing_date: date

    @model_validator(mode="after")
    def _phase_matches_type(self) -> "PhaseJobMessage":
        if PHASE_BY_TYPE[self.type] != self.phase:
            raise ValueError(f"phase {self.phase} does not match job type {self.type.value}")
        return self

    @classmethod
    def for_subscriber(
        cls, subscriber: Subscriber, job_type: JobType, now: datetime, day: date | None = None
    ) -> "PhaseJobMessage":
        return cls(
            user_id=subscriber.user_id,
            username=subscriber.username,
            email=subscriber.email,
            type=job_type,
            phase=PHASE_BY_TYPE[job_type],
            timestamp=now,
            processing_date=day or now.date(),
        )

    @property
    def notification_type(self) -> NotificationType:
        return NOTIFICATION_TYPE_BY_JOB[self.type]

    @property
    def dedup_key(self) -> str:
        return dedup_key(self.user_id, self.phase, self.processing_date)


def dedup_key(user_id: int, phase: int, day: date) -> str:
    return f"{user_id}:{phase}:{day.isoformat()}"
