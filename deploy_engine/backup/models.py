"""Backup domain models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from deploy_engine.core.models import utcnow


BACKUP_FORMAT_VERSION = "1.0"


class BackupStatus(Enum):
    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"


class BackupType(Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    AUTO = "auto"


@dataclass
class Backup:
    """Snapshot of one or more deployments."""

    backup_id: str
    name: str
    backup_type: BackupType = BackupType.MANUAL
    status: BackupStatus = BackupStatus.CREATING

    size_bytes: int = 0
    include_volumes: bool = False
    encrypted: bool = False

    storage_path: str = ""
    checksum: str = ""

    # Fixed at creation
    deployment_ids: List[str] = field(default_factory=list)

    error_message: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class BackupSelection:
    """Which deployments a backup captures."""

    deployment_ids: List[str] = field(default_factory=list)
    all_deployments: bool = False


@dataclass
class BackupOptions:
    name: str = ""
    backup_type: BackupType = BackupType.MANUAL
    include_volumes: bool = False
    encrypted: bool = False
    # Optional; a random key is generated when absent
    passphrase: Optional[str] = None


@dataclass
class RestoreRequest:
    """Transient restore parameters. Never persisted."""

    backup_id: str
    selective: bool = False
    deployment_ids: List[str] = field(default_factory=list)
    overwrite_existing: bool = False
    restore_volumes: bool = False
    test_restore: bool = False

    def includes(self, deployment_id: str) -> bool:
        return not self.selective or deployment_id in self.deployment_ids


@dataclass
class BackupMetadata:
    """Document written at the archive root."""

    version: str
    created_at: datetime
    deployment_ids: List[str]
    deployment_count: int
    volume_count: int = 0
    include_volumes: bool = False
    manifests: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "deployment_ids": list(self.deployment_ids),
            "deployment_count": self.deployment_count,
            "volume_count": self.volume_count,
            "include_volumes": self.include_volumes,
            "manifests": dict(self.manifests),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupMetadata":
        return cls(
            version=data["version"],
            created_at=datetime.fromisoformat(data["created_at"]),
            deployment_ids=list(data.get("deployment_ids", [])),
            deployment_count=int(data.get("deployment_count", 0)),
            volume_count=int(data.get("volume_count", 0)),
            include_volumes=bool(data.get("include_volumes", False)),
            manifests=dict(data.get("manifests", {})),
        )


# -------------------------
# RESTORE REPORT
# -------------------------

class RestoreOutcome(Enum):
    RESTORED = "restored"
    WOULD_RESTORE = "would_restore"
    SKIPPED_EXISTING = "skipped_existing"
    FAILED = "failed"


@dataclass
class RestoreEntry:
    deployment_id: str
    stack_name: str
    outcome: RestoreOutcome
    message: str = ""


@dataclass
class RestoreReport:
    backup_id: str
    test_restore: bool
    entries: List[RestoreEntry] = field(default_factory=list)

    def add(self, deployment_id, stack_name, outcome, message=""):
        self.entries.append(RestoreEntry(deployment_id, stack_name, outcome, message))

    def by_outcome(self, outcome: RestoreOutcome) -> List[RestoreEntry]:
        return [e for e in self.entries if e.outcome == outcome]

    @property
    def succeeded(self) -> bool:
        return not self.by_outcome(RestoreOutcome.FAILED)


# -------------------------
# SCHEDULES & RETENTION
# -------------------------

@dataclass
class BackupSchedule:
    schedule_id: str
    name: str
    cron_expression: str
    include_volumes: bool = False
    encrypt: bool = False
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RetentionPolicy:
    daily_days: int = 7
    weekly_weeks: int = 4
    monthly_months: int = 6
