#deploy_engine\infrastructure\sql\models.py
"""SQLAlchemy ORM models for database tables."""

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String, Text
)

from deploy_engine.backup.models import BackupStatus, BackupType
from deploy_engine.core.models import DeploymentStatus, LogLevel, utcnow
from deploy_engine.infrastructure.sql.database import Base


class DeploymentORM(Base):
    """
    Deployment table.

    Indexes:
    - Primary key on deployment_id
    - Unique index on stack_name
    - Index on status for lifecycle queries
    """

    __tablename__ = "deployments"

    deployment_id = Column(String(64), primary_key=True)
    template_ref = Column(String(255), nullable=False)
    stack_name = Column(String(63), nullable=False, unique=True, index=True)

    status = Column(
        SQLEnum(DeploymentStatus, name="deployment_status"),
        nullable=False,
        default=DeploymentStatus.PENDING,
        index=True
    )

    # DeploymentConfig.to_dict()
    config = Column(JSON, nullable=False, default=dict)
    compose_source = Column(Text, nullable=False, default="")

    tunnel_active = Column(Boolean, nullable=False, default=False)
    tunnel_url = Column(String(512), nullable=False, default="")

    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Deployment {self.deployment_id} {self.stack_name} status={self.status}>"


class DeploymentLogORM(Base):
    """Append-only deployment log stream."""

    __tablename__ = "deployment_logs"

    log_id = Column(Integer, primary_key=True, autoincrement=True)
    deployment_id = Column(String(64), nullable=False)
    level = Column(SQLEnum(LogLevel, name="deployment_log_level"), nullable=False)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_deployment_logs_deployment_ts", "deployment_id", "timestamp"),
    )


class BackupORM(Base):
    __tablename__ = "backups"

    backup_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)

    backup_type = Column(
        SQLEnum(BackupType, name="backup_type"),
        nullable=False,
        default=BackupType.MANUAL,
        index=True
    )
    status = Column(
        SQLEnum(BackupStatus, name="backup_status"),
        nullable=False,
        default=BackupStatus.CREATING,
        index=True
    )

    size_bytes = Column(BigInteger, nullable=False, default=0)
    include_volumes = Column(Boolean, nullable=False, default=False)
    encrypted = Column(Boolean, nullable=False, default=False)

    storage_path = Column(String(1024), nullable=False, default="")
    checksum = Column(String(64), nullable=False, default="")

    # Ordered list of captured deployment IDs, fixed at creation
    deployment_ids = Column(JSON, nullable=False, default=list)

    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class BackupScheduleORM(Base):
    __tablename__ = "backup_schedules"

    schedule_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    cron_expression = Column(String(255), nullable=False)
    include_volumes = Column(Boolean, nullable=False, default=False)
    encrypt = Column(Boolean, nullable=False, default=False)
    enabled = Column(Boolean, nullable=False, default=True, index=True)

    last_run = Column(DateTime(timezone=True), nullable=True)
    next_run = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
