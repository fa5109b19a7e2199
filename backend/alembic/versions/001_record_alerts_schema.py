"""Record alerts schema: users, alerts, driver notifications, map positions, history, pending emails, queue, tokens, admin config

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("tm_username", sa.String(255), nullable=True),
        sa.Column("tm_account_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=False)
    op.create_index("ix_users_email", "users", ["email"], unique=False)
    op.create_index("ix_users_tm_account_id", "users", ["tm_account_id"], unique=False)

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("alert_type", sa.String(20), nullable=False, server_default="accurate"),
        sa.Column("record_filter", sa.String(10), nullable=False, server_default="top5"),
        sa.Column("map_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_alerts_user_id", "alerts", ["user_id"], unique=True)

    op.create_table(
        "alert_maps",
        sa.Column("alert_id", sa.Integer(), nullable=False),
        sa.Column("map_uid", sa.String(255), nullable=False),
        sa.Column("map_name", sa.String(500), nullable=True),
        sa.ForeignKeyConstraint(["alert_id"], ["alerts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("alert_id", "map_uid"),
    )
    op.create_index("ix_alert_maps_alert_id", "alert_maps", ["alert_id"], unique=False)

    op.create_table(
        "driver_notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("map_uid", sa.String(255), nullable=False),
        sa.Column("map_name", sa.String(500), nullable=True),
        sa.Column("tm_account_id", sa.String(255), nullable=False),
        sa.Column("current_position", sa.Integer(), nullable=False),
        sa.Column("personal_best_score", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "map_uid", name="uq_driver_notification_user_map"),
    )
    op.create_index("ix_driver_notifications_user_id", "driver_notifications", ["user_id"], unique=False)
    op.create_index("ix_driver_notifications_map_uid", "driver_notifications", ["map_uid"], unique=False)
    op.create_index("ix_driver_notifications_status", "driver_notifications", ["status"], unique=False)
    op.create_index("ix_driver_notifications_last_checked", "driver_notifications", ["last_checked"], unique=False)

    op.create_table(
        "map_positions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("map_uid", sa.String(255), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("last_checked", sa.DateTime(timezone=True), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_map_positions_map_uid", "map_positions", ["map_uid"], unique=True)
    op.create_index("ix_map_positions_last_checked", "map_positions", ["last_checked"], unique=False)

    op.create_table(
        "notification_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("notification_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("records_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processing_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "notification_type", "processing_date", name="uq_notification_history_user_type_date"
        ),
    )
    op.create_index("ix_notification_history_user_id", "notification_history", ["user_id"], unique=False)
    op.create_index(
        "ix_notification_history_notification_type", "notification_history", ["notification_type"], unique=False
    )
    op.create_index("ix_notification_history_status", "notification_history", ["status"], unique=False)
    op.create_index(
        "ix_notification_history_processing_date", "notification_history", ["processing_date"], unique=False
    )

    op.create_table(
        "pending_emails",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("processing_date", sa.Date(), nullable=False),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("mapper_content", sa.Text(), nullable=False, server_default=""),
        sa.Column("driver_content", sa.Text(), nullable=False, server_default=""),
        sa.Column("mapper_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("driver_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("mapper_done", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("driver_done", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "processing_date", name="uq_pending_email_user_date"),
    )
    op.create_index("ix_pending_emails_user_id", "pending_emails", ["user_id"], unique=False)
    op.create_index("ix_pending_emails_processing_date", "pending_emails", ["processing_date"], unique=False)
    op.create_index("ix_pending_emails_status", "pending_emails", ["status"], unique=False)
    op.create_index("ix_pending_emails_created_at", "pending_emails", ["created_at"], unique=False)

    op.create_table(
        "phase_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("dedup_key", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("phase", sa.Integer(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key"),
    )
    op.create_index("ix_phase_jobs_user_id", "phase_jobs", ["user_id"], unique=False)
    op.create_index("ix_phase_jobs_status", "phase_jobs", ["status"], unique=False)
    op.create_index("ix_phase_jobs_available_at", "phase_jobs", ["available_at"], unique=False)

    op.create_table(
        "api_tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("encrypted_access_token", sa.Text(), nullable=False),
        sa.Column("encrypted_refresh_token", sa.Text(), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_api_tokens_provider", "api_tokens", ["provider"], unique=True)

    op.create_table(
        "admin_config",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("config_key", sa.String(100), nullable=False),
        sa.Column("config_value", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("config_key"),
    )
    op.bulk_insert(
        sa.table(
            "admin_config",
            sa.column("config_key", sa.String),
            sa.column("config_value", sa.String),
            sa.column("description", sa.Text),
        ),
        [
            {
                "config_key": "max_maps_per_user",
                "config_value": "200",
                "description": "Maps above this count switch a mapper alert to inaccurate mode",
            },
            {
                "config_key": "max_new_records_per_map",
                "config_value": "20",
                "description": "New records listed per map before truncation",
            },
            {
                "config_key": "popular_map_message",
                "config_value": "This map has more than {cap} new times",
                "description": "Note shown next to the +N more marker",
            },
        ],
    )


def downgrade() -> None:
    op.drop_table("admin_config")
    op.drop_index("ix_api_tokens_provider", table_name="api_tokens")
    op.drop_table("api_tokens")
    op.drop_index("ix_phase_jobs_available_at", table_name="phase_jobs")
    op.drop_index("ix_phase_jobs_status", table_name="phase_jobs")
    op.drop_index("ix_phase_jobs_user_id", table_name="phase_jobs")
    op.drop_table("phase_jobs")
    op.drop_index("ix_pending_emails_created_at", table_name="pending_emails")
    op.drop_index("ix_pending_emails_status", table_name="pending_emails")
    op.drop_index("ix_pending_emails_processing_date", table_name="pending_emails")
    op.drop_index("ix_pending_emails_user_id", table_name="pending_emails")
    op.drop_table("pending_emails")
    op.drop_index("ix_notification_history_processing_date", table_name="notification_history")
    op.drop_index("ix_notification_history_status", table_name="notification_history")
    op.drop_index("ix_notification_history_notification_type", table_name="notification_history")
    op.drop_index("ix_notification_history_user_id", table_name="notification_history")
    op.drop_table("notification_history")
    op.drop_index("ix_map_positions_last_checked", table_name="map_positions")
    op.drop_index("ix_map_positions_map_uid", table_name="map_positions")
    op.drop_table("map_positions")
    op.drop_index("ix_driver_notifications_last_checked", table_name="driver_notifications")
    op.drop_index("ix_driver_notifications_status", table_name="driver_notifications")
    op.drop_index("ix_driver_notifications_map_uid", table_name="driver_notifications")
    op.drop_index("ix_driver_notifications_user_id", table_name="driver_notifications")
    op.drop_table("driver_notifications")
    op.drop_index("ix_alert_maps_alert_id", table_name="alert_maps")
    op.drop_table("alert_maps")
    op.drop_index("ix_alerts_user_id", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_users_tm_account_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
