from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from deploy_engine.api.container import get_backup_engine
from deploy_engine.api.schemas.backup import (
    BackupCreateRequest,
    BackupResponse,
    RestoreAcceptedResponse,
    RestoreRequestBody,
)
from deploy_engine.backup.models import (
    Backup,
    BackupOptions,
    BackupSelection,
    BackupType,
    RestoreRequest,
)

router = APIRouter(prefix="/backups", tags=["backups"])


def _to_response(backup: Backup) -> BackupResponse:
    return BackupResponse(
        backup_id=backup.backup_id,
        name=backup.name,
        backup_type=backup.backup_type.value,
        status=backup.status.value,
        size_bytes=backup.size_bytes,
        include_volumes=backup.include_volumes,
        encrypted=backup.encrypted,
        deployment_ids=backup.deployment_ids,
        error_message=backup.error_message,
        created_at=backup.created_at,
        completed_at=backup.completed_at,
    )


@router.post("/", response_model=BackupResponse, status_code=202)
def create_backup(
    request: BackupCreateRequest,
    engine=Depends(get_backup_engine),
):
    backup = engine.create_backup(
        BackupSelection(
            deployment_ids=request.deployment_ids,
            all_deployments=request.all_deployments,
        ),
        BackupOptions(
            name=request.name,
            backup_type=BackupType.MANUAL,
            include_volumes=request.include_volumes,
            encrypted=request.encrypted,
            passphrase=request.passphrase,
        ),
    )
    return _to_response(backup)


@router.get("/", response_model=List[BackupResponse])
def list_backups(
    backup_type: Optional[str] = None,
    engine=Depends(get_backup_engine),
):
    type_filter = None
    if backup_type is not None:
        try:
            type_filter = BackupType(backup_type)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown backup type: {backup_type}")
    return [_to_response(b) for b in engine.list_backups(type_filter)]


@router.get("/{backup_id}", response_model=BackupResponse)
def get_backup(
    backup_id: str,
    engine=Depends(get_backup_engine),
):
    return _to_response(engine.get_backup(backup_id))


@router.post("/{backup_id}/restore", response_model=RestoreAcceptedResponse, status_code=202)
def restore_backup(
    backup_id: str,
    request: RestoreRequestBody,
    engine=Depends(get_backup_engine),
):
    engine.restore_backup(RestoreRequest(
        backup_id=backup_id,
        selective=request.selective,
        deployment_ids=request.deployment_ids,
        overwrite_existing=request.overwrite_existing,
        restore_volumes=request.restore_volumes,
        test_restore=request.test_restore,
    ))
    return RestoreAcceptedResponse(backup_id=backup_id, status="restoring")


@router.delete("/{backup_id}", status_code=204)
def delete_backup(
    backup_id: str,
    engine=Depends(get_backup_engine),
):
    engine.delete_backup(backup_id)
    return Response(status_code=204)
