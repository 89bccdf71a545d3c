#deploy_engine\infrastructure\sql\repository.py

"""SQL repository implementations using SQLAlchemy."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from deploy_engine.backup.models import (
    Backup,
    BackupSchedule,
    BackupStatus,
    BackupType,
)
from deploy_engine.core.errors import (
    AlreadyExists,
    ConcurrencyError,
    NotFound,
    StackNameConflict,
)
from deploy_engine.core.models import (
    Deployment,
    DeploymentConfig,
    DeploymentLog,
    DeploymentStatus,
    utcnow,
)
from deploy_engine.core.repository import (
    BackupRepository,
    BackupScheduleRepository,
    DeploymentLogRepository,
    DeploymentRepository,
)
from deploy_engine.infrastructure.sql.database import as_utc, get_session_factory
from deploy_engine.infrastructure.sql.models import (
    BackupORM,
    BackupScheduleORM,
    DeploymentLogORM,
    DeploymentORM,
)

logger = logging.getLogger(__name__)


DEPLOYMENT_CHANGE_FIELDS = {"tunnel_active", "tunnel_url", "error_message"}
BACKUP_CHANGE_FIELDS = {"size_bytes", "storage_path", "checksum", "error_message", "completed_at"}


# ============================================
# Mapping Functions
# ============================================

def deployment_to_domain(orm: DeploymentORM) -> Deployment:
    return Deployment(
        deployment_id=orm.deployment_id,
        template_ref=orm.template_ref,
        stack_name=orm.stack_name,
        status=orm.status,
        config=DeploymentConfig.from_dict(orm.config),
        compose_source=orm.compose_source or "",
        tunnel_active=bool(orm.tunnel_active),
        tunnel_url=orm.tunnel_url or "",
        error_message=orm.error_message,
        created_at=as_utc(orm.created_at),
        updated_at=as_utc(orm.updated_at),
    )


def deployment_to_orm(deployment: Deployment) -> DeploymentORM:
    return DeploymentORM(
        deployment_id=deployment.deployment_id,
        template_ref=deployment.template_ref,
        stack_name=deployment.stack_name,
        status=deployment.status,
        config=deployment.config.to_dict(),
        compose_source=deployment.compose_source,
        tunnel_active=deployment.tunnel_active,
        tunnel_url=deployment.tunnel_url,
        error_message=deployment.error_message,
        created_at=deployment.created_at,
        updated_at=deployment.updated_at,
    )


def log_to_domain(orm: DeploymentLogORM) -> DeploymentLog:
    return DeploymentLog(
        deployment_id=orm.deployment_id,
        level=orm.level,
        message=orm.message,
        timestamp=as_utc(orm.timestamp),
        log_id=orm.log_id,
    )


def backup_to_domain(orm: BackupORM) -> Backup:
    return Backup(
        backup_id=orm.backup_id,
        name=orm.name,
        backup_type=orm.backup_type,
        status=orm.status,
        size_bytes=orm.size_bytes or 0,
        include_volumes=bool(orm.include_volumes),
        encrypted=bool(orm.encrypted),
        storage_path=orm.storage_path or "",
        checksum=orm.checksum or "",
        deployment_ids=list(orm.deployment_ids or []),
        error_message=orm.error_message,
        created_at=as_utc(orm.created_at),
        completed_at=as_utc(orm.completed_at),
    )


def backup_to_orm(backup: Backup) -> BackupORM:
    return BackupORM(
        backup_id=backup.backup_id,
        name=backup.name,
        backup_type=backup.backup_type,
        status=backup.status,
        size_bytes=backup.size_bytes,
        include_volumes=backup.include_volumes,
        encrypted=backup.encrypted,
        storage_path=backup.storage_path,
        checksum=backup.checksum,
        deployment_ids=list(backup.deployment_ids),
        error_message=backup.error_message,
        created_at=backup.created_at,
        completed_at=backup.completed_at,
    )


def schedule_to_domain(orm: BackupScheduleORM) -> BackupSchedule:
    return BackupSchedule(
        schedule_id=orm.schedule_id,
        name=orm.name,
        cron_expression=orm.cron_expression,
        include_volumes=bool(orm.include_volumes),
        encrypt=bool(orm.encrypt),
        enabled=bool(orm.enabled),
        last_run=as_utc(orm.last_run),
        next_run=as_utc(orm.next_run),
        created_at=as_utc(orm.created_at),
    )


def _checked_changes(changes: Optional[Dict[str, Any]], allowed) -> Dict[str, Any]:
    changes = dict(changes or {})
    for key in changes:
        if key not in allowed:
            raise ValueError(f"Field {key!r} cannot be changed here")
    return changes


class _SqlRepository:
    """Shared session handling."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Initialize repository with optional session factory.

        Args:
            session_factory: SQLAlchemy session factory. If None, uses the configured database.
        """
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        """Get new session from the injected factory."""
        return self._session_factory()


# ============================================
# Deployments
# ============================================

class SqlDeploymentRepository(_SqlRepository, DeploymentRepository):

    # -------------------------
    # CREATE
    # -------------------------

    def create(self, deployment: Deployment) -> None:
        session = self._get_session()
        try:
            session.add(deployment_to_orm(deployment))
            session.commit()
            logger.debug(f"[sql] create deployment {deployment.deployment_id} -> done")
        except IntegrityError as e:
            session.rollback()
            if session.get(DeploymentORM, deployment.deployment_id) is not None:
                raise AlreadyExists(
                    f"Deployment {deployment.deployment_id} already exists"
                ) from e
            raise StackNameConflict(
                f"Stack name {deployment.stack_name!r} is already in use"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Failed to create deployment: {e}") from e
        finally:
            session.close()

    # -------------------------
    # READ
    # -------------------------

    def get(self, deployment_id: str) -> Optional[Deployment]:
        session = self._get_session()
        try:
            orm = session.get(DeploymentORM, deployment_id)
            return deployment_to_domain(orm) if orm else None
        finally:
            session.close()

    def get_by_stack_name(self, stack_name: str) -> Optional[Deployment]:
        session = self._get_session()
        try:
            orm = session.query(DeploymentORM).filter(
                DeploymentORM.stack_name == stack_name
            ).first()
            return deployment_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_by_status(self, status: DeploymentStatus) -> List[Deployment]:
        session = self._get_session()
        try:
            results = session.query(DeploymentORM).filter(
                DeploymentORM.status == status
            ).order_by(DeploymentORM.created_at.asc()).all()
            return [deployment_to_domain(orm) for orm in results]
        finally:
            session.close()

    def list_all(self, limit: int = 100, offset: int = 0) -> List[Deployment]:
        session = self._get_session()
        try:
            results = session.query(DeploymentORM).order_by(
                DeploymentORM.created_at.desc()
            ).offset(offset).limit(limit).all()
            return [deployment_to_domain(orm) for orm in results]
        finally:
            session.close()

    # -------------------------
    # COMPARE-AND-SWAP
    # -------------------------

    def update_status(
        self,
        deployment_id: str,
        expected: DeploymentStatus,
        new: DeploymentStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        values = _checked_changes(changes, DEPLOYMENT_CHANGE_FIELDS)
        values["status"] = new
        values["updated_at"] = utcnow()

        session = self._get_session()
        try:
            # Single conditional UPDATE: the status predicate is the lock
            updated = session.query(DeploymentORM).filter(
                DeploymentORM.deployment_id == deployment_id,
                DeploymentORM.status == expected,
            ).update(values, synchronize_session=False)
            session.commit()
            logger.debug(
                f"[sql] update_status {deployment_id} {expected.value}->{new.value} -> {bool(updated)}"
            )
            return updated == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Status update failed: {e}") from e
        finally:
            session.close()

    def update_config(
        self,
        deployment_id: str,
        config: DeploymentConfig,
        compose_source: str,
    ) -> None:
        session = self._get_session()
        try:
            updated = session.query(DeploymentORM).filter(
                DeploymentORM.deployment_id == deployment_id
            ).update(
                {
                    "config": config.to_dict(),
                    "compose_source": compose_source,
                    "updated_at": utcnow(),
                },
                synchronize_session=False,
            )
            if not updated:
                session.rollback()
                raise NotFound(f"Deployment {deployment_id} not found")
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Config update failed: {e}") from e
        finally:
            session.close()

    def delete_if_status(
        self,
        deployment_id: str,
        allowed: Iterable[DeploymentStatus],
    ) -> bool:
        allowed = list(allowed)
        session = self._get_session()
        try:
            deleted = session.query(DeploymentORM).filter(
                DeploymentORM.deployment_id == deployment_id,
                DeploymentORM.status.in_(allowed),
            ).delete(synchronize_session=False)
            session.commit()
            return deleted == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Delete failed: {e}") from e
        finally:
            session.close()


# ============================================
# Deployment logs
# ============================================

class SqlDeploymentLogRepository(_SqlRepository, DeploymentLogRepository):

    def append(self, entry: DeploymentLog) -> None:
        session = self._get_session()
        try:
            orm = DeploymentLogORM(
                deployment_id=entry.deployment_id,
                level=entry.level,
                message=entry.message,
                timestamp=entry.timestamp,
            )
            session.add(orm)
            session.commit()
            entry.log_id = orm.log_id
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Failed to append log: {e}") from e
        finally:
            session.close()

    def list_for(self, deployment_id: str, limit: int = 100) -> List[DeploymentLog]:
        session = self._get_session()
        try:
            query = session.query(DeploymentLogORM).filter(
                DeploymentLogORM.deployment_id == deployment_id
            ).order_by(DeploymentLogORM.timestamp.desc(), DeploymentLogORM.log_id.desc())
            if limit:
                query = query.limit(limit)
            # Latest `limit` entries, returned oldest first
            return [log_to_domain(orm) for orm in reversed(query.all())]
        finally:
            session.close()

    def delete_for(self, deployment_id: str) -> None:
        session = self._get_session()
        try:
            session.query(DeploymentLogORM).filter(
                DeploymentLogORM.deployment_id == deployment_id
            ).delete(synchronize_session=False)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Failed to delete logs: {e}") from e
        finally:
            session.close()


# ============================================
# Backups
# ============================================

class SqlBackupRepository(_SqlRepository, BackupRepository):

    def create(self, backup: Backup) -> None:
        session = self._get_session()
        try:
            session.add(backup_to_orm(backup))
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExists(f"Backup {backup.backup_id} already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Failed to create backup: {e}") from e
        finally:
            session.close()

    def get(self, backup_id: str) -> Optional[Backup]:
        session = self._get_session()
        try:
            orm = session.get(BackupORM, backup_id)
            return backup_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_all(self) -> List[Backup]:
        session = self._get_session()
        try:
            results = session.query(BackupORM).order_by(BackupORM.created_at.desc()).all()
            return [backup_to_domain(orm) for orm in results]
        finally:
            session.close()

    def list_by_type(self, backup_type: BackupType) -> List[Backup]:
        session = self._get_session()
        try:
            results = session.query(BackupORM).filter(
                BackupORM.backup_type == backup_type
            ).order_by(BackupORM.created_at.desc()).all()
            return [backup_to_domain(orm) for orm in results]
        finally:
            session.close()

    def update_status(
        self,
        backup_id: str,
        expected: BackupStatus,
        new: BackupStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        values = _checked_changes(changes, BACKUP_CHANGE_FIELDS)
        values["status"] = new

        session = self._get_session()
        try:
            updated = session.query(BackupORM).filter(
                BackupORM.backup_id == backup_id,
                BackupORM.status == expected,
            ).update(values, synchronize_session=False)
            session.commit()
            return updated == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Backup status update failed: {e}") from e
        finally:
            session.close()

    def delete(self, backup_id: str) -> bool:
        session = self._get_session()
        try:
            deleted = session.query(BackupORM).filter(
                BackupORM.backup_id == backup_id
            ).delete(synchronize_session=False)
            session.commit()
            return deleted == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Backup delete failed: {e}") from e
        finally:
            session.close()


# ============================================
# Backup schedules
# ============================================

class SqlBackupScheduleRepository(_SqlRepository, BackupScheduleRepository):

    def create(self, schedule: BackupSchedule) -> None:
        session = self._get_session()
        try:
            session.add(BackupScheduleORM(
                schedule_id=schedule.schedule_id,
                name=schedule.name,
                cron_expression=schedule.cron_expression,
                include_volumes=schedule.include_volumes,
                encrypt=schedule.encrypt,
                enabled=schedule.enabled,
                last_run=schedule.last_run,
                next_run=schedule.next_run,
                created_at=schedule.created_at,
            ))
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExists(f"Schedule {schedule.schedule_id} already exists") from e
        finally:
            session.close()

    def get(self, schedule_id: str) -> Optional[BackupSchedule]:
        session = self._get_session()
        try:
            orm = session.get(BackupScheduleORM, schedule_id)
            return schedule_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_enabled(self) -> List[BackupSchedule]:
        session = self._get_session()
        try:
            results = session.query(BackupScheduleORM).filter(
                BackupScheduleORM.enabled.is_(True)
            ).order_by(BackupScheduleORM.created_at.asc()).all()
            return [schedule_to_domain(orm) for orm in results]
        finally:
            session.close()

    def update(self, schedule: BackupSchedule) -> None:
        session = self._get_session()
        try:
            orm = session.get(BackupScheduleORM, schedule.schedule_id)
            if orm is None:
                raise NotFound(f"Schedule {schedule.schedule_id} not found")
            orm.name = schedule.name
            orm.cron_expression = schedule.cron_expression
            orm.include_volumes = schedule.include_volumes
            orm.encrypt = schedule.encrypt
            orm.enabled = schedule.enabled
            orm.last_run = schedule.last_run
            orm.next_run = schedule.next_run
            session.commit()
        except NotFound:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Schedule update failed: {e}") from e
        finally:
            session.close()

    def delete(self, schedule_id: str) -> bool:
        session = self._get_session()
        try:
            deleted = session.query(BackupScheduleORM).filter(
                BackupScheduleORM.schedule_id == schedule_id
            ).delete(synchronize_session=False)
            session.commit()
            return deleted == 1
        finally:
            session.close()
