# deploy_engine/infrastructure/memory/repository.py

import copy
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from deploy_engine.backup.models import (
    Backup,
    BackupSchedule,
    BackupStatus,
    BackupType,
)
from deploy_engine.core.errors import AlreadyExists, NotFound, StackNameConflict
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


DEPLOYMENT_CHANGE_FIELDS = {"tunnel_active", "tunnel_url", "error_message"}
BACKUP_CHANGE_FIELDS = {"size_bytes", "storage_path", "checksum", "error_message", "completed_at"}


def _apply_changes(target, changes: Optional[Dict[str, Any]], allowed) -> None:
    for key, value in (changes or {}).items():
        if key not in allowed:
            raise ValueError(f"Field {key!r} cannot be changed here")
        setattr(target, key, value)


class InMemoryDeploymentRepository(DeploymentRepository):
    def __init__(self):
        self._store: Dict[str, Deployment] = {}
        self._lock = Lock()

    def create(self, deployment: Deployment) -> None:
        with self._lock:
            if deployment.deployment_id in self._store:
                raise AlreadyExists(f"Deployment {deployment.deployment_id} already exists")
            for existing in self._store.values():
                if existing.stack_name == deployment.stack_name:
                    raise StackNameConflict(
                        f"Stack name {deployment.stack_name!r} is already in use"
                    )
            self._store[deployment.deployment_id] = copy.deepcopy(deployment)

    def get(self, deployment_id: str) -> Optional[Deployment]:
        with self._lock:
            deployment = self._store.get(deployment_id)
            return copy.deepcopy(deployment) if deployment else None

    def get_by_stack_name(self, stack_name: str) -> Optional[Deployment]:
        with self._lock:
            for deployment in self._store.values():
                if deployment.stack_name == stack_name:
                    return copy.deepcopy(deployment)
            return None

    def list_by_status(self, status: DeploymentStatus) -> List[Deployment]:
        with self._lock:
            results = [d for d in self._store.values() if d.status == status]
            results.sort(key=lambda d: d.created_at)
            return copy.deepcopy(results)

    def list_all(self, limit: int = 100, offset: int = 0) -> List[Deployment]:
        with self._lock:
            results = sorted(self._store.values(), key=lambda d: d.created_at, reverse=True)
            return copy.deepcopy(results[offset:offset + limit])

    def update_status(
        self,
        deployment_id: str,
        expected: DeploymentStatus,
        new: DeploymentStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._lock:
            deployment = self._store.get(deployment_id)
            if deployment is None or deployment.status != expected:
                return False

            _apply_changes(deployment, changes, DEPLOYMENT_CHANGE_FIELDS)
            deployment.status = new
            deployment.updated_at = utcnow()
            return True

    def update_config(
        self,
        deployment_id: str,
        config: DeploymentConfig,
        compose_source: str,
    ) -> None:
        with self._lock:
            deployment = self._store.get(deployment_id)
            if deployment is None:
                raise NotFound(f"Deployment {deployment_id} not found")
            deployment.config = copy.deepcopy(config)
            deployment.compose_source = compose_source
            deployment.updated_at = utcnow()

    def delete_if_status(
        self,
        deployment_id: str,
        allowed: Iterable[DeploymentStatus],
    ) -> bool:
        allowed = set(allowed)
        with self._lock:
            deployment = self._store.get(deployment_id)
            if deployment is None or deployment.status not in allowed:
                return False
            del self._store[deployment_id]
            return True


class InMemoryDeploymentLogRepository(DeploymentLogRepository):
    def __init__(self):
        self._logs: Dict[str, List[DeploymentLog]] = {}
        self._next_id = 1
        self._lock = Lock()

    def append(self, entry: DeploymentLog) -> None:
        with self._lock:
            stored = copy.deepcopy(entry)
            stored.log_id = self._next_id
            self._next_id += 1
            entry.log_id = stored.log_id
            self._logs.setdefault(entry.deployment_id, []).append(stored)

    def list_for(self, deployment_id: str, limit: int = 100) -> List[DeploymentLog]:
        with self._lock:
            entries = sorted(
                self._logs.get(deployment_id, []),
                key=lambda e: (e.timestamp, e.log_id),
            )
            return copy.deepcopy(entries[-limit:]) if limit else copy.deepcopy(entries)

    def delete_for(self, deployment_id: str) -> None:
        with self._lock:
            self._logs.pop(deployment_id, None)


class InMemoryBackupRepository(BackupRepository):
    def __init__(self):
        self._store: Dict[str, Backup] = {}
        self._lock = Lock()

    def create(self, backup: Backup) -> None:
        with self._lock:
            if backup.backup_id in self._store:
                raise AlreadyExists(f"Backup {backup.backup_id} already exists")
            self._store[backup.backup_id] = copy.deepcopy(backup)

    def get(self, backup_id: str) -> Optional[Backup]:
        with self._lock:
            backup = self._store.get(backup_id)
            return copy.deepcopy(backup) if backup else None

    def list_all(self) -> List[Backup]:
        with self._lock:
            results = sorted(self._store.values(), key=lambda b: b.created_at, reverse=True)
            return copy.deepcopy(results)

    def list_by_type(self, backup_type: BackupType) -> List[Backup]:
        return [b for b in self.list_all() if b.backup_type == backup_type]

    def update_status(
        self,
        backup_id: str,
        expected: BackupStatus,
        new: BackupStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._lock:
            backup = self._store.get(backup_id)
            if backup is None or backup.status != expected:
                return False
            _apply_changes(backup, changes, BACKUP_CHANGE_FIELDS)
            backup.status = new
            return True

    def delete(self, backup_id: str) -> bool:
        with self._lock:
            return self._store.pop(backup_id, None) is not None


class InMemoryBackupScheduleRepository(BackupScheduleRepository):
    def __init__(self):
        self._store: Dict[str, BackupSchedule] = {}
        self._lock = Lock()

    def create(self, schedule: BackupSchedule) -> None:
        with self._lock:
            if schedule.schedule_id in self._store:
                raise AlreadyExists(f"Schedule {schedule.schedule_id} already exists")
            self._store[schedule.schedule_id] = copy.deepcopy(schedule)

    def get(self, schedule_id: str) -> Optional[BackupSchedule]:
        with self._lock:
            schedule = self._store.get(schedule_id)
            return copy.deepcopy(schedule) if schedule else None

    def list_enabled(self) -> List[BackupSchedule]:
        with self._lock:
            results = [s for s in self._store.values() if s.enabled]
            results.sort(key=lambda s: s.created_at)
            return copy.deepcopy(results)

    def update(self, schedule: BackupSchedule) -> None:
        with self._lock:
            if schedule.schedule_id not in self._store:
                raise NotFound(f"Schedule {schedule.schedule_id} not found")
            self._store[schedule.schedule_id] = copy.deepcopy(schedule)

    def delete(self, schedule_id: str) -> bool:
        with self._lock:
            return self._store.pop(schedule_id, None) is not None
