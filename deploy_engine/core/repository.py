# deploy_engine/core/repository.py

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from deploy_engine.backup.models import (
    Backup,
    BackupSchedule,
    BackupStatus,
    BackupType,
)
from deploy_engine.core.models import (
    Deployment,
    DeploymentConfig,
    DeploymentLog,
    DeploymentStatus,
)


class DeploymentRepository(ABC):
    """
    Persistence contract for deployments.

    The store is the serialization point for status: every status write
    goes through `update_status`, a compare-and-swap on the current status.
    """

    @abstractmethod
    def create(self, deployment: Deployment) -> None:
        """
        Persist a new deployment.
        Must fail if the ID or the stack name already exists.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, deployment_id: str) -> Optional[Deployment]:
        """
        Fetch deployment by ID.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def get_by_stack_name(self, stack_name: str) -> Optional[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def list_by_status(self, status: DeploymentStatus) -> List[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def list_all(self, limit: int = 100, offset: int = 0) -> List[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def update_status(
        self,
        deployment_id: str,
        expected: DeploymentStatus,
        new: DeploymentStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Atomically set status to `new` only if it is currently `expected`.

        `changes` may carry tunnel_active, tunnel_url and error_message.
        Returns False if the deployment is missing or the status differs.
        """
        raise NotImplementedError

    @abstractmethod
    def update_config(
        self,
        deployment_id: str,
        config: DeploymentConfig,
        compose_source: str,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_if_status(
        self,
        deployment_id: str,
        allowed: Iterable[DeploymentStatus],
    ) -> bool:
        """
        Hard delete, only if the current status is one of `allowed`.
        Returns True if a row was removed.
        """
        raise NotImplementedError


class DeploymentLogRepository(ABC):
    """Append-only deployment log stream."""

    @abstractmethod
    def append(self, entry: DeploymentLog) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_for(self, deployment_id: str, limit: int = 100) -> List[DeploymentLog]:
        """Oldest first."""
        raise NotImplementedError

    @abstractmethod
    def delete_for(self, deployment_id: str) -> None:
        raise NotImplementedError


class BackupRepository(ABC):

    @abstractmethod
    def create(self, backup: Backup) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, backup_id: str) -> Optional[Backup]:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[Backup]:
        """Newest first."""
        raise NotImplementedError

    @abstractmethod
    def list_by_type(self, backup_type: BackupType) -> List[Backup]:
        raise NotImplementedError

    @abstractmethod
    def update_status(
        self,
        backup_id: str,
        expected: BackupStatus,
        new: BackupStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Compare-and-swap on backup status.

        `changes` may carry size_bytes, storage_path, checksum,
        error_message and completed_at. The deployment ID list is never
        updated.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, backup_id: str) -> bool:
        raise NotImplementedError


class BackupScheduleRepository(ABC):

    @abstractmethod
    def create(self, schedule: BackupSchedule) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, schedule_id: str) -> Optional[BackupSchedule]:
        raise NotImplementedError

    @abstractmethod
    def list_enabled(self) -> List[BackupSchedule]:
        raise NotImplementedError

    @abstractmethod
    def update(self, schedule: BackupSchedule) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, schedule_id: str) -> bool:
        raise NotImplementedError
