"""Test backup capture, restore and deletion."""

import io
import json
import tarfile

import pytest

from deploy_engine.backup.archive import (
    METADATA_FILE,
    DeploymentManifest,
    StagingArea,
    extract_archive,
)
from deploy_engine.backup.models import (
    Backup,
    BackupOptions,
    BackupSelection,
    BackupStatus,
    BackupType,
    RestoreOutcome,
    RestoreRequest,
)
from deploy_engine.core.errors import (
    ConcurrencyError,
    IntegrityCheckFailed,
    InvalidRestoreRequest,
    InvalidTransition,
    NoDeploymentsSelected,
    NotFound,
    StorageFailure,
    ValidationError,
)
from deploy_engine.core.models import DeploymentStatus
from deploy_engine.orchestrator.volumes import VolumeInfo


def completed_backup(backup_engine, selection=None, options=None):
    selection = selection or BackupSelection(all_deployments=True)
    backup = backup_engine.create_backup(selection, options)
    assert backup_engine.wait(backup.backup_id, timeout=5)
    return backup_engine.get_backup(backup.backup_id)


def remove_deployment(lifecycle, deployment_id):
    lifecycle.transition_deployment(deployment_id, "stop")
    assert lifecycle.wait(deployment_id, timeout=5)
    lifecycle.delete_deployment(deployment_id, wait=True)


def read_archive(storage, backup):
    with storage.retrieve(backup.storage_path) as f:
        data = f.read()
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        names = tar.getnames()
        metadata = json.load(tar.extractfile(METADATA_FILE))
    return names, metadata


class TestCreateBackup:
    """Capturing deployments."""

    def test_backup_completes(self, backup_engine, storage, running_deployment):
        """Test that a backup of running deployments reaches completed."""
        backup = backup_engine.create_backup(BackupSelection(all_deployments=True))
        assert backup.status == BackupStatus.CREATING
        assert backup.deployment_ids == [running_deployment.deployment_id]

        assert backup_engine.wait(backup.backup_id, timeout=5)
        final = backup_engine.get_backup(backup.backup_id)

        assert final.status == BackupStatus.COMPLETED
        assert final.storage_path == f"{backup.backup_id}.tar.gz"
        assert final.size_bytes == storage.size(final.storage_path)
        assert len(final.checksum) == 64
        assert final.completed_at is not None

    def test_archive_layout(self, backup_engine, storage, running_deployment):
        """Test the metadata document and per-deployment files."""
        backup = completed_backup(backup_engine)
        names, metadata = read_archive(storage, backup)
        deployment_id = running_deployment.deployment_id

        assert METADATA_FILE in names
        assert f"deployments/{deployment_id}/deployment.json" in names
        assert f"deployments/{deployment_id}/docker-compose.yml" in names
        assert metadata["version"] == "1.0"
        assert metadata["deployment_ids"] == [deployment_id]
        assert metadata["deployment_count"] == 1
        assert set(metadata["manifests"]) == {deployment_id}

    def test_default_name(self, backup_engine, running_deployment):
        """Test that unnamed backups get a timestamped name."""
        backup = backup_engine.create_backup(BackupSelection(all_deployments=True))
        assert backup.name.startswith("backup-")

    def test_all_deployments_only_captures_running(self, backup_engine, lifecycle, running_deployment):
        """Test that all_deployments selects running deployments only."""
        lifecycle.create_deployment("single", "demo-2", auto_start=False)

        backup = backup_engine.create_backup(BackupSelection(all_deployments=True))
        assert backup.deployment_ids == [running_deployment.deployment_id]

    def test_explicit_selection_is_deduplicated(self, backup_engine, lifecycle, running_deployment):
        """Test that explicit IDs may include non-running deployments, once each."""
        pending = lifecycle.create_deployment("single", "demo-2", auto_start=False)
        ids = [running_deployment.deployment_id, pending.deployment_id, pending.deployment_id]

        backup = backup_engine.create_backup(BackupSelection(deployment_ids=ids))

        assert backup.deployment_ids == [running_deployment.deployment_id, pending.deployment_id]

    def test_nothing_selected_writes_no_record(self, backup_engine, backup_repo):
        """Test that an empty selection is refused before any write."""
        with pytest.raises(NoDeploymentsSelected):
            backup_engine.create_backup(BackupSelection(all_deployments=True))

        assert backup_repo.list_all() == []

    def test_unknown_deployment_rejected(self, backup_engine, backup_repo):
        """Test that explicit selections must name existing deployments."""
        with pytest.raises(ValidationError, match="Unknown deployment"):
            backup_engine.create_backup(BackupSelection(deployment_ids=["missing"]))

        assert backup_repo.list_all() == []

    def test_empty_passphrase_rejected(self, backup_engine, running_deployment):
        """Test that encryption with an empty passphrase is refused."""
        with pytest.raises(ValidationError):
            backup_engine.create_backup(
                BackupSelection(all_deployments=True),
                BackupOptions(encrypted=True, passphrase=""),
            )

    def test_encrypted_backup(self, backup_engine, storage, key_store, running_deployment):
        """Test that encrypted archives are stored with a key on disk."""
        backup = completed_backup(
            backup_engine, options=BackupOptions(encrypted=True, passphrase="correct horse")
        )

        assert backup.status == BackupStatus.COMPLETED
        assert backup.storage_path.endswith(".tar.gz.enc")
        assert key_store.exists(backup.backup_id)
        with storage.retrieve(backup.storage_path) as f:
            with pytest.raises(tarfile.TarError):
                tarfile.open(fileobj=io.BytesIO(f.read()), mode="r:gz")

    def test_storage_failure_marks_failed(self, backup_engine, storage, key_store,
                                          running_deployment, monkeypatch):
        """Test that a failed upload leaves a failed record and no key."""
        def fail_store(path, stream):
            raise StorageFailure("bucket unavailable")

        monkeypatch.setattr(storage, "store", fail_store)

        backup = completed_backup(backup_engine, options=BackupOptions(encrypted=True))

        assert backup.status == BackupStatus.FAILED
        assert backup.error_message == "bucket unavailable"
        assert not key_store.exists(backup.backup_id)

    def test_failed_completion_write_marks_failed(self, backup_engine, backup_repo, storage,
                                                  key_store, running_deployment, monkeypatch):
        """Test that an error recording completion fails the backup and removes its output."""
        update_status = backup_repo.update_status

        def refuse_completion(backup_id, expected, new, changes=None):
            if new == BackupStatus.COMPLETED:
                raise ConcurrencyError("row version changed")
            return update_status(backup_id, expected, new, changes)

        monkeypatch.setattr(backup_repo, "update_status", refuse_completion)

        backup = completed_backup(backup_engine, options=BackupOptions(encrypted=True))

        assert backup.status == BackupStatus.FAILED
        assert backup.error_message == "row version changed"
        assert list(storage.list()) == []
        assert not key_store.exists(backup.backup_id)

    def test_staging_is_cleaned_up(self, backup_engine, tmp_path, running_deployment):
        """Test that no scratch files remain after capture."""
        completed_backup(backup_engine)
        assert list((tmp_path / "staging").iterdir()) == []

    def test_volume_metadata_captured(self, backup_engine, storage, volume_inspector, running_deployment):
        """Test that include_volumes records the stack's named volumes."""
        volume_inspector.volumes["demo-1"] = [VolumeInfo(name="demo-1_data")]

        backup = completed_backup(backup_engine, options=BackupOptions(include_volumes=True))
        _, metadata = read_archive(storage, backup)

        assert metadata["include_volumes"] is True
        assert metadata["volume_count"] == 1


class TestRestoreBackup:
    """Recreating deployments from archives."""

    def test_restore_recreates_deployment(self, backup_engine, lifecycle, running_deployment):
        """Test a full restore after the deployment was removed."""
        deployment_id = running_deployment.deployment_id
        backup = completed_backup(backup_engine)
        remove_deployment(lifecycle, deployment_id)

        report = backup_engine.restore_backup(RestoreRequest(backup.backup_id)).result(timeout=5)

        assert [(e.deployment_id, e.outcome) for e in report.entries] == [
            (deployment_id, RestoreOutcome.RESTORED)
        ]
        assert report.succeeded
        assert lifecycle.wait(deployment_id, timeout=5)
        restored = lifecycle.get_deployment(deployment_id)
        assert restored.stack_name == "demo-1"
        assert restored.status == DeploymentStatus.RUNNING

    def test_existing_deployment_is_skipped(self, backup_engine, running_deployment):
        """Test that restore without overwrite keeps existing deployments."""
        backup = completed_backup(backup_engine)

        report = backup_engine.restore_backup(RestoreRequest(backup.backup_id)).result(timeout=5)

        assert report.entries[0].outcome == RestoreOutcome.SKIPPED_EXISTING

    def test_overwrite_running_deployment_fails(self, backup_engine, running_deployment):
        """Test that overwrite cannot replace a running deployment."""
        backup = completed_backup(backup_engine)

        report = backup_engine.restore_backup(
            RestoreRequest(backup.backup_id, overwrite_existing=True)
        ).result(timeout=5)

        assert report.entries[0].outcome == RestoreOutcome.FAILED
        assert not report.succeeded

    def test_test_restore_changes_nothing(self, backup_engine, lifecycle, executor, running_deployment):
        """Test that a dry-run restore only reports."""
        deployment_id = running_deployment.deployment_id
        backup = completed_backup(backup_engine)
        remove_deployment(lifecycle, deployment_id)
        calls_before = len(executor.calls)

        report = backup_engine.restore_backup(
            RestoreRequest(backup.backup_id, test_restore=True)
        ).result(timeout=5)

        assert report.test_restore is True
        assert report.entries[0].outcome == RestoreOutcome.WOULD_RESTORE
        assert lifecycle.list_deployments() == []
        assert len(executor.calls) == calls_before

    def test_selective_restore(self, backup_engine, lifecycle, running_deployment):
        """Test that only requested deployments are restored, unknown IDs fail."""
        other = lifecycle.create_deployment("single", "demo-2")
        assert lifecycle.wait(other.deployment_id, timeout=5)
        backup = completed_backup(backup_engine)
        remove_deployment(lifecycle, other.deployment_id)

        report = backup_engine.restore_backup(RestoreRequest(
            backup.backup_id,
            selective=True,
            deployment_ids=[other.deployment_id, "never-captured"],
        )).result(timeout=5)

        outcomes = {e.deployment_id: e.outcome for e in report.entries}
        assert outcomes == {
            other.deployment_id: RestoreOutcome.RESTORED,
            "never-captured": RestoreOutcome.FAILED,
        }

    def test_selective_restore_requires_ids(self, backup_engine, running_deployment):
        """Test that a selective request must name deployments."""
        backup = completed_backup(backup_engine)

        with pytest.raises(InvalidRestoreRequest):
            backup_engine.restore_backup(RestoreRequest(backup.backup_id, selective=True))

    def test_encrypted_restore(self, backup_engine, lifecycle, running_deployment):
        """Test that encrypted archives decrypt with the stored key."""
        deployment_id = running_deployment.deployment_id
        backup = completed_backup(backup_engine, options=BackupOptions(encrypted=True))
        remove_deployment(lifecycle, deployment_id)

        report = backup_engine.restore_backup(RestoreRequest(backup.backup_id)).result(timeout=5)

        assert report.entries[0].outcome == RestoreOutcome.RESTORED

    def test_restore_volumes(self, backup_engine, lifecycle, volume_inspector, running_deployment):
        """Test that captured volumes are recreated when requested."""
        volume_inspector.volumes["demo-1"] = [VolumeInfo(name="demo-1_data")]
        backup = completed_backup(backup_engine, options=BackupOptions(include_volumes=True))
        remove_deployment(lifecycle, running_deployment.deployment_id)

        backup_engine.restore_backup(
            RestoreRequest(backup.backup_id, restore_volumes=True)
        ).result(timeout=5)

        assert volume_inspector.ensured == ["demo-1_data"]

    def test_tampered_archive_is_rejected(self, backup_engine, storage, running_deployment):
        """Test that a checksum mismatch aborts the restore."""
        backup = completed_backup(backup_engine)
        storage.store(backup.storage_path, io.BytesIO(b"not the archive"))

        future = backup_engine.restore_backup(RestoreRequest(backup.backup_id))

        with pytest.raises(IntegrityCheckFailed):
            future.result(timeout=5)

    def test_restore_while_creating_refused(self, backup_engine, backup_repo):
        """Test that only completed backups can be restored."""
        backup_repo.create(Backup(backup_id="b-1", name="in-flight"))

        with pytest.raises(InvalidRestoreRequest):
            backup_engine.restore_backup(RestoreRequest("b-1"))

    def test_restore_unknown_backup(self, backup_engine):
        """Test that unknown backups raise NotFound."""
        with pytest.raises(NotFound):
            backup_engine.restore_backup(RestoreRequest("missing"))


class TestDeleteBackup:
    """Removing backups."""

    def test_delete_removes_archive_key_and_record(self, backup_engine, storage, key_store,
                                                   running_deployment):
        """Test that delete cleans up everything the backup owns."""
        backup = completed_backup(backup_engine, options=BackupOptions(encrypted=True))

        backup_engine.delete_backup(backup.backup_id)

        assert not storage.exists(backup.storage_path)
        assert not key_store.exists(backup.backup_id)
        with pytest.raises(NotFound):
            backup_engine.get_backup(backup.backup_id)

    def test_delete_while_creating_refused(self, backup_engine, backup_repo):
        """Test that an in-flight backup cannot be deleted."""
        backup_repo.create(Backup(backup_id="b-1", name="in-flight"))

        with pytest.raises(InvalidTransition):
            backup_engine.delete_backup("b-1")

    def test_list_by_type(self, backup_engine, running_deployment):
        """Test filtering backups by type."""
        completed_backup(backup_engine)
        completed_backup(backup_engine, options=BackupOptions(backup_type=BackupType.SCHEDULED))

        assert len(backup_engine.list_backups()) == 2
        assert len(backup_engine.list_backups(BackupType.SCHEDULED)) == 1


class TestArchive:
    """Archive helpers."""

    def test_staging_area_is_exclusive(self, tmp_path):
        """Test that two operations cannot share a staging directory."""
        with StagingArea(tmp_path, "op-1"):
            with pytest.raises(StorageFailure):
                with StagingArea(tmp_path, "op-1"):
                    pass
        assert not (tmp_path / "op-1").exists()

    def test_extract_refuses_traversal(self, tmp_path):
        """Test that members escaping the destination are rejected."""
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo("../escape.txt")
            info.size = 1
            tar.addfile(info, io.BytesIO(b"x"))

        with pytest.raises(IntegrityCheckFailed):
            extract_archive(archive, tmp_path / "out")
        assert not (tmp_path / "escape.txt").exists()

    def test_extract_refuses_links(self, tmp_path):
        """Test that symlink members are rejected."""
        archive = tmp_path / "link.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo("link")
            info.type = tarfile.SYMTYPE
            info.linkname = "/etc/passwd"
            tar.addfile(info)

        with pytest.raises(IntegrityCheckFailed):
            extract_archive(archive, tmp_path / "out")

    def test_malformed_manifest(self):
        """Test that manifests missing required fields are integrity failures."""
        with pytest.raises(IntegrityCheckFailed):
            DeploymentManifest.from_dict({"stack_name": "demo-1"})
