from record_alerts.models.user import User
from record_alerts.models.alert import AlertMap, AlertType, MapperAlert, RecordFilter
from record_alerts.models.driver_notification import DriverNotification, DriverNotificationStatus
from record_alerts.models.map_position import MapPosition
from record_alerts.models.notification_history import NotificationHistory, NotificationStatus, NotificationType
from record_alerts.models.pending_email import PendingEmail, PendingEmailStatus
from record_alerts.models.phase_job import JobStatus, PhaseJob
from record_alerts.models.api_token import ApiToken
from record_alerts.models.admin_config import AdminConfig

__all__ = [
    "User",
    "MapperAlert",
    "AlertMap",
    "AlertType",
    "RecordFilter",
    "DriverNotification",
    "DriverNotificationStatus",
    "MapPosition",
    "NotificationHistory",
    "NotificationStatus",
    "NotificationType",
    "PendingEmail",
    "PendingEmailStatus",
    "PhaseJob",
    "JobStatus",
    "ApiToken",
    "AdminConfig",
]
