# deploy_engine/backup/archive.py
"""
Backup archive layout.

    metadata.json
    deployments/<deployment_id>/deployment.json
    deployments/<deployment_id>/docker-compose.yml

Packed as a single .tar.gz. metadata.json carries a SHA-256 per manifest;
the whole-archive hash lives on the Backup record.
"""

import hashlib
import json
import logging
import shutil
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from deploy_engine.backup.models import BACKUP_FORMAT_VERSION, BackupMetadata
from deploy_engine.core.errors import IntegrityCheckFailed, StorageFailure
from deploy_engine.core.models import Deployment, DeploymentConfig, utcnow
from deploy_engine.orchestrator.volumes import VolumeInfo

logger = logging.getLogger(__name__)


METADATA_FILE = "metadata.json"
DEPLOYMENTS_DIR = "deployments"
MANIFEST_FILE = "deployment.json"
COMPOSE_FILE = "docker-compose.yml"


@dataclass
class DeploymentManifest:
    """Everything needed to recreate one deployment."""

    deployment_id: str
    stack_name: str
    template_ref: str
    status: str
    config: DeploymentConfig
    compose_source: str
    volumes: List[VolumeInfo] = field(default_factory=list)
    captured_at: datetime = field(default_factory=utcnow)

    @classmethod
    def capture(cls, deployment: Deployment, volumes: Optional[List[VolumeInfo]] = None):
        return cls(
            deployment_id=deployment.deployment_id,
            stack_name=deployment.stack_name,
            template_ref=deployment.template_ref,
            status=deployment.status.value,
            config=deployment.config,
            compose_source=deployment.compose_source,
            volumes=list(volumes or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "stack_name": self.stack_name,
            "template_ref": self.template_ref,
            "status": self.status,
            "config": self.config.to_dict(),
            "compose_source": self.compose_source,
            "volumes": [v.to_dict() for v in self.volumes],
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentManifest":
        try:
            return cls(
                deployment_id=data["deployment_id"],
                stack_name=data["stack_name"],
                template_ref=data.get("template_ref", ""),
                status=data.get("status", ""),
                config=DeploymentConfig.from_dict(data.get("config")),
                compose_source=data["compose_source"],
                volumes=[VolumeInfo.from_dict(v) for v in data.get("volumes") or []],
                captured_at=datetime.fromisoformat(data["captured_at"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityCheckFailed(f"malformed deployment manifest: {e}") from e


# -------------------------
# STAGING
# -------------------------

class StagingArea:
    """
    Scratch directory owned by exactly one backup or restore operation.

    Creation fails if the directory already exists.
    """

    def __init__(self, root: Union[str, Path], name: str):
        self.path = Path(root) / name

    def __enter__(self) -> "StagingArea":
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.mkdir()
        except FileExistsError as e:
            raise StorageFailure(f"staging directory {self.path} is already in use") from e
        except OSError as e:
            raise StorageFailure(f"failed to create staging directory {self.path}: {e}") from e
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()

    def cleanup(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)


# -------------------------
# WRITE
# -------------------------

def write_manifest(staging_dir: Path, manifest: DeploymentManifest) -> str:
    """Write a deployment's files. Returns the manifest's SHA-256."""
    target = staging_dir / DEPLOYMENTS_DIR / manifest.deployment_id
    payload = json.dumps(manifest.to_dict(), indent=2, sort_keys=True).encode("utf-8")
    try:
        target.mkdir(parents=True, exist_ok=True)
        (target / MANIFEST_FILE).write_bytes(payload)
        (target / COMPOSE_FILE).write_text(manifest.compose_source, encoding="utf-8")
    except OSError as e:
        raise StorageFailure(f"failed to write manifest for {manifest.deployment_id}: {e}") from e
    return hashlib.sha256(payload).hexdigest()


def write_metadata(staging_dir: Path, manifests: List[DeploymentManifest], digests: Dict[str, str],
                   include_volumes: bool = False) -> BackupMetadata:
    metadata = BackupMetadata(
        version=BACKUP_FORMAT_VERSION,
        created_at=utcnow(),
        deployment_ids=[m.deployment_id for m in manifests],
        deployment_count=len(manifests),
        volume_count=sum(len(m.volumes) for m in manifests) if include_volumes else 0,
        include_volumes=include_volumes,
        manifests=dict(digests),
    )
    try:
        (staging_dir / METADATA_FILE).write_text(
            json.dumps(metadata.to_dict(), indent=2), encoding="utf-8"
        )
    except OSError as e:
        raise StorageFailure(f"failed to write backup metadata: {e}") from e
    return metadata


def build_archive(staging_dir: Path, archive_path: Path) -> Path:
    """Pack the staging directory's contents into a .tar.gz."""
    try:
        with tarfile.open(archive_path, "w:gz") as tar:
            for item in sorted(staging_dir.iterdir()):
                tar.add(item, arcname=item.name)
    except (OSError, tarfile.TarError) as e:
        archive_path.unlink(missing_ok=True)
        raise StorageFailure(f"failed to build archive {archive_path.name}: {e}") from e
    logger.info(f"[backup] built archive {archive_path.name}")
    return archive_path


# -------------------------
# READ
# -------------------------

def extract_archive(archive_path: Path, dest: Path) -> Path:
    """Unpack an archive, refusing links and members outside `dest`."""
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member, root)
            for member in members:
                tar.extract(member, path=root, set_attrs=False)
    except tarfile.TarError as e:
        raise IntegrityCheckFailed(f"unreadable backup archive: {e}") from e
    except OSError as e:
        raise StorageFailure(f"failed to extract archive: {e}") from e
    return dest


def _check_member(member: tarfile.TarInfo, root: Path) -> None:
    if not (member.isfile() or member.isdir()):
        raise IntegrityCheckFailed(f"unexpected archive member type: {member.name}")
    target = (root / member.name).resolve()
    if target != root and root not in target.parents:
        raise IntegrityCheckFailed(f"archive member escapes extraction directory: {member.name}")


def read_metadata(content_dir: Path) -> BackupMetadata:
    path = content_dir / METADATA_FILE
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        metadata = BackupMetadata.from_dict(data)
    except FileNotFoundError as e:
        raise IntegrityCheckFailed("backup archive has no metadata.json") from e
    except (KeyError, TypeError, ValueError) as e:
        raise IntegrityCheckFailed(f"malformed backup metadata: {e}") from e

    if metadata.version != BACKUP_FORMAT_VERSION:
        raise IntegrityCheckFailed(f"unsupported backup format version {metadata.version}")
    return metadata


def read_manifests(content_dir: Path, metadata: BackupMetadata) -> List[DeploymentManifest]:
    """Load every captured manifest, checking each against its recorded digest."""
    manifests = []
    for deployment_id in metadata.deployment_ids:
        path = content_dir / DEPLOYMENTS_DIR / deployment_id / MANIFEST_FILE
        try:
            payload = path.read_bytes()
        except FileNotFoundError as e:
            raise IntegrityCheckFailed(f"manifest missing for deployment {deployment_id}") from e

        expected = metadata.manifests.get(deployment_id)
        actual = hashlib.sha256(payload).hexdigest()
        if expected != actual:
            raise IntegrityCheckFailed(f"manifest digest mismatch for deployment {deployment_id}")

        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise IntegrityCheckFailed(f"malformed manifest for deployment {deployment_id}") from e
        manifests.append(DeploymentManifest.from_dict(data))
    return manifests
