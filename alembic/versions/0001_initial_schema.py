"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


deployment_status = sa.Enum(
    "PENDING", "DEPLOYING", "RUNNING", "STOPPED", "FAILED", name="deployment_status"
)
log_level = sa.Enum("INFO", "WARNING", "ERROR", name="deployment_log_level")
backup_type = sa.Enum("MANUAL", "SCHEDULED", "AUTO", name="backup_type")
backup_status = sa.Enum("CREATING", "COMPLETED", "FAILED", name="backup_status")


def upgrade() -> None:
    op.create_table(
        "deployments",
        sa.Column("deployment_id", sa.String(64), primary_key=True),
        sa.Column("template_ref", sa.String(255), nullable=False),
        sa.Column("stack_name", sa.String(63), nullable=False),
        sa.Column("status", deployment_status, nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("compose_source", sa.Text(), nullable=False),
        sa.Column("tunnel_active", sa.Boolean(), nullable=False),
        sa.Column("tunnel_url", sa.String(512), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_deployments_stack_name", "deployments", ["stack_name"], unique=True)
    op.create_index("ix_deployments_status", "deployments", ["status"])

    op.create_table(
        "deployment_logs",
        sa.Column("log_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deployment_id", sa.String(64), nullable=False),
        sa.Column("level", log_level, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_deployment_logs_deployment_ts", "deployment_logs", ["deployment_id", "timestamp"]
    )

    op.create_table(
        "backups",
        sa.Column("backup_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("backup_type", backup_type, nullable=False),
        sa.Column("status", backup_status, nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("include_volumes", sa.Boolean(), nullable=False),
        sa.Column("encrypted", sa.Boolean(), nullable=False),
        sa.Column("storage_path", sa.String(1024), nullable=False),
        sa.Column("checksum", sa.String(64), nullable=False),
        sa.Column("deployment_ids", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_backups_backup_type", "backups", ["backup_type"])
    op.create_index("ix_backups_status", "backups", ["status"])
    op.create_index("ix_backups_created_at", "backups", ["created_at"])

    op.create_table(
        "backup_schedules",
        sa.Column("schedule_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("cron_expression", sa.String(255), nullable=False),
        sa.Column("include_volumes", sa.Boolean(), nullable=False),
        sa.Column("encrypt", sa.Boolean(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_backup_schedules_enabled", "backup_schedules", ["enabled"])


def downgrade() -> None:
    op.drop_table("backup_schedules")
    op.drop_table("backups")
    op.drop_table("deployment_logs")
    op.drop_table("deployments")
    for enum in (backup_status, backup_type, log_level, deployment_status):
        enum.drop(op.get_bind(), checkfirst=True)
