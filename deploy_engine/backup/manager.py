# deploy_engine/backup/manager.py
"""Backup capture and restore."""

import logging
import shutil
from concurrent.futures import Future
from contextlib import closing
from pathlib import Path
from typing import List, Optional, Union
from uuid import uuid4

from deploy_engine.backup import encryption
from deploy_engine.backup.archive import (
    DeploymentManifest,
    StagingArea,
    build_archive,
    extract_archive,
    read_manifests,
    read_metadata,
    write_manifest,
    write_metadata,
)
from deploy_engine.backup.encryption import KeyStore
from deploy_engine.backup.models import (
    Backup,
    BackupOptions,
    BackupSelection,
    BackupStatus,
    BackupType,
    RestoreOutcome,
    RestoreReport,
    RestoreRequest,
)
from deploy_engine.backup.storage import StorageBackend
from deploy_engine.core.errors import (
    ConcurrencyError,
    DeployEngineError,
    InvalidRestoreRequest,
    InvalidTransition,
    NoDeploymentsSelected,
    NotFound,
    StackNameConflict,
    StorageFailure,
    ValidationError,
)
from deploy_engine.core.models import DeploymentStatus, utcnow
from deploy_engine.core.repository import BackupRepository, DeploymentRepository
from deploy_engine.core.service import DeploymentLifecycle
from deploy_engine.core.validation import validate_stack_name
from deploy_engine.executor.tasks import BackgroundTasks
from deploy_engine.orchestrator.volumes import VolumeInspector

logger = logging.getLogger(__name__)


ARCHIVE_SUFFIX = ".tar.gz"
ENCRYPTED_SUFFIX = ".enc"


class BackupEngine:
    """
    Captures deployments into archives and recreates them later.

    `create_backup` and `restore_backup` validate synchronously and hand
    the archive work to a background task keyed by backup ID.
    """

    def __init__(
        self,
        repository: BackupRepository,
        deployments: DeploymentRepository,
        lifecycle: DeploymentLifecycle,
        storage: StorageBackend,
        key_store: KeyStore,
        tasks: BackgroundTasks,
        *,
        staging_dir: Union[str, Path] = "./data/staging",
        volume_inspector: Optional[VolumeInspector] = None,
    ):
        self._repo = repository
        self._deployments = deployments
        self._lifecycle = lifecycle
        self._storage = storage
        self._keys = key_store
        self._tasks = tasks
        self._staging_root = Path(staging_dir)
        self._volumes = volume_inspector

    # -------------------------
    # CREATE
    # -------------------------

    def create_backup(self, selection: BackupSelection, options: Optional[BackupOptions] = None) -> Backup:
        """
        Write a `creating` record and capture in the background.

        Raises NoDeploymentsSelected before anything is written when the
        selection resolves to nothing.
        """
        options = options or BackupOptions()
        deployment_ids = self._resolve_selection(selection)
        if not deployment_ids:
            raise NoDeploymentsSelected("No deployments selected for backup")
        if options.encrypted and options.passphrase == "":
            raise ValidationError("passphrase must not be empty")

        created_at = utcnow()
        backup = Backup(
            backup_id=str(uuid4()),
            name=options.name or f"backup-{created_at:%Y%m%d-%H%M%S}",
            backup_type=options.backup_type,
            status=BackupStatus.CREATING,
            include_volumes=options.include_volumes,
            encrypted=options.encrypted,
            deployment_ids=deployment_ids,
            created_at=created_at,
        )
        self._repo.create(backup)
        logger.info(
            f"[backup] created backup {backup.backup_id} ({backup.name}) "
            f"for {len(deployment_ids)} deployment(s)"
        )

        self._tasks.submit(backup.backup_id, self._run_capture, backup.backup_id, options)
        return backup

    def _resolve_selection(self, selection: BackupSelection) -> List[str]:
        if selection.all_deployments:
            running = self._deployments.list_by_status(DeploymentStatus.RUNNING)
            return [d.deployment_id for d in running]

        deployment_ids = list(dict.fromkeys(selection.deployment_ids))
        missing = [d for d in deployment_ids if self._deployments.get(d) is None]
        if missing:
            raise ValidationError(f"Unknown deployment(s): {', '.join(missing)}")
        return deployment_ids

    def _run_capture(self, backup_id: str, options: BackupOptions) -> None:
        backup = self._repo.get(backup_id)
        if backup is None:
            return

        storage_path = backup_id + ARCHIVE_SUFFIX + (ENCRYPTED_SUFFIX if backup.encrypted else "")
        archive_path = self._staging_root / f"{backup_id}{ARCHIVE_SUFFIX}"
        key_stored = False
        stored = False

        try:
            with StagingArea(self._staging_root, backup_id) as staging:
                manifests = [self._capture(d, backup.include_volumes) for d in backup.deployment_ids]
                digests = {m.deployment_id: write_manifest(staging.path, m) for m in manifests}
                write_metadata(staging.path, manifests, digests, backup.include_volumes)
                build_archive(staging.path, archive_path)

            checksum = encryption.sha256_file(archive_path)

            with open(archive_path, "rb") as archive:
                stream = archive
                if backup.encrypted:
                    key = self._key_for(options)
                    self._keys.store(backup_id, key)
                    key_stored = True
                    stream = encryption.encrypt(archive, key)
                stored = True
                size = self._storage.store(storage_path, stream)

            completed = self._repo.update_status(
                backup_id,
                BackupStatus.CREATING,
                BackupStatus.COMPLETED,
                {
                    "size_bytes": size,
                    "storage_path": storage_path,
                    "checksum": checksum,
                    "completed_at": utcnow(),
                },
            )
            if not completed:
                raise ConcurrencyError(f"Backup {backup_id} left creating during capture")

        except Exception as e:
            logger.error(f"[backup] capture of {backup_id} failed: {e}", exc_info=True)
            self._discard(backup_id, storage_path if stored else None, key_stored)
            self._mark_failed(backup_id, str(e) or e.__class__.__name__)
            return
        finally:
            archive_path.unlink(missing_ok=True)

        logger.info(f"[backup] backup {backup_id} completed ({size} bytes)")

    def _mark_failed(self, backup_id: str, message: str) -> None:
        try:
            self._repo.update_status(
                backup_id,
                BackupStatus.CREATING,
                BackupStatus.FAILED,
                {"error_message": message},
            )
        except Exception as e:
            logger.error(f"[backup] could not mark {backup_id} failed: {e}", exc_info=True)

    def _capture(self, deployment_id: str, include_volumes: bool) -> DeploymentManifest:
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise NotFound(f"Deployment {deployment_id} disappeared before capture")

        volumes = []
        if include_volumes and self._volumes is not None:
            volumes = self._volumes.list_stack_volumes(deployment.stack_name)
        return DeploymentManifest.capture(deployment, volumes)

    def _key_for(self, options: BackupOptions) -> bytes:
        if options.passphrase:
            return encryption.derive_key(options.passphrase, encryption.generate_salt())
        return encryption.generate_key()

    def _discard(self, backup_id: str, storage_path: Optional[str], key_stored: bool) -> None:
        """Remove partial output of a failed capture."""
        if storage_path is not None:
            try:
                self._storage.delete(storage_path)
            except StorageFailure as e:
                logger.warning(f"[backup] could not remove partial archive {storage_path}: {e}")
        if key_stored:
            try:
                self._keys.delete(backup_id)
            except StorageFailure as e:
                logger.warning(f"[backup] could not remove key for {backup_id}: {e}")

    # -------------------------
    # RESTORE
    # -------------------------

    def restore_backup(self, request: RestoreRequest) -> Future:
        """
        Validate the request and restore in the background.

        The returned future resolves to a RestoreReport. Deployments that
        restored successfully are kept even if others fail.
        """
        backup = self.get_backup(request.backup_id)
        if backup.status != BackupStatus.COMPLETED:
            raise InvalidRestoreRequest(
                f"Backup {backup.backup_id} is {backup.status.value}, only completed backups can be restored"
            )
        if request.selective and not request.deployment_ids:
            raise InvalidRestoreRequest("Selective restore requires at least one deployment")

        logger.info(f"[backup] restore of {backup.backup_id} requested (test={request.test_restore})")
        return self._tasks.submit(backup.backup_id, self._run_restore, backup, request)

    def _run_restore(self, backup: Backup, request: RestoreRequest) -> RestoreReport:
        report = RestoreReport(backup_id=backup.backup_id, test_restore=request.test_restore)
        scratch_name = f"restore-{backup.backup_id}-{uuid4().hex[:8]}"

        with StagingArea(self._staging_root, scratch_name) as scratch:
            archive_path = scratch.path / f"archive{ARCHIVE_SUFFIX}"
            self._download(backup, archive_path)
            if backup.checksum:
                encryption.verify_checksum(archive_path, backup.checksum)

            content = extract_archive(archive_path, scratch.path / "content")
            metadata = read_metadata(content)
            manifests = read_manifests(content, metadata)

            captured = {m.deployment_id for m in manifests}
            for manifest in manifests:
                if request.includes(manifest.deployment_id):
                    self._restore_one(manifest, request, report)

            if request.selective:
                for deployment_id in request.deployment_ids:
                    if deployment_id not in captured:
                        report.add(deployment_id, "", RestoreOutcome.FAILED, "not captured in this backup")

        logger.info(
            f"[backup] restore of {backup.backup_id} finished: "
            + ", ".join(f"{e.deployment_id}={e.outcome.value}" for e in report.entries)
        )
        return report

    def _download(self, backup: Backup, target: Path) -> None:
        with closing(self._storage.retrieve(backup.storage_path)) as source:
            stream = source
            if backup.encrypted:
                stream = encryption.decrypt(source, self._keys.retrieve(backup.backup_id))
            try:
                with open(target, "wb") as out:
                    shutil.copyfileobj(stream, out)
            except OSError as e:
                raise StorageFailure(f"failed to download backup {backup.backup_id}: {e}") from e

    def _restore_one(self, manifest: DeploymentManifest, request: RestoreRequest, report: RestoreReport) -> None:
        deployment_id = manifest.deployment_id
        stack_name = manifest.stack_name

        try:
            validate_stack_name(stack_name)
            self._lifecycle.prepare_compose_source(manifest.compose_source, manifest.config)
        except ValidationError as e:
            report.add(deployment_id, stack_name, RestoreOutcome.FAILED, str(e))
            return

        existing = (
            self._deployments.get(deployment_id) is not None
            or self._deployments.get_by_stack_name(stack_name) is not None
        )

        if request.test_restore:
            if existing and not request.overwrite_existing:
                report.add(deployment_id, stack_name, RestoreOutcome.SKIPPED_EXISTING,
                           "deployment already exists")
            else:
                message = "would overwrite existing deployment" if existing else "would create deployment"
                report.add(deployment_id, stack_name, RestoreOutcome.WOULD_RESTORE, message)
            return

        try:
            if request.restore_volumes and self._volumes is not None:
                for volume in manifest.volumes:
                    self._volumes.ensure_volume(volume)

            self._lifecycle.restore_deployment(
                deployment_id=deployment_id,
                template_ref=manifest.template_ref,
                stack_name=stack_name,
                config=manifest.config,
                compose_source=manifest.compose_source,
                overwrite_existing=request.overwrite_existing,
            )
        except StackNameConflict as e:
            report.add(deployment_id, stack_name, RestoreOutcome.SKIPPED_EXISTING, str(e))
        except DeployEngineError as e:
            logger.error(f"[backup] restoring {deployment_id} failed: {e}", exc_info=True)
            report.add(deployment_id, stack_name, RestoreOutcome.FAILED, str(e))
        else:
            report.add(deployment_id, stack_name, RestoreOutcome.RESTORED)

    # -------------------------
    # QUERIES / DELETE
    # -------------------------

    def get_backup(self, backup_id: str) -> Backup:
        backup = self._repo.get(backup_id)
        if backup is None:
            raise NotFound(f"Backup {backup_id} not found")
        return backup

    def list_backups(self, backup_type: Optional[BackupType] = None) -> List[Backup]:
        if backup_type is not None:
            return self._repo.list_by_type(backup_type)
        return self._repo.list_all()

    def delete_backup(self, backup_id: str) -> None:
        """Remove archive, key and record. Refused while the backup is being created."""
        backup = self.get_backup(backup_id)
        if backup.status == BackupStatus.CREATING:
            raise InvalidTransition(
                backup.status, "delete", f"Backup {backup_id} is still being created"
            )

        if backup.storage_path:
            self._storage.delete(backup.storage_path)
        if backup.encrypted:
            self._keys.delete(backup_id)
        self._repo.delete(backup_id)
        logger.info(f"[backup] deleted backup {backup_id}")

    def wait(self, backup_id: str, timeout: Optional[float] = None) -> bool:
        return self._tasks.wait(backup_id, timeout=timeout)
