from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class BackupCreateRequest(BaseModel):
    name: str = ""
    deployment_ids: List[str] = Field(default_factory=list)
    all_deployments: bool = False
    include_volumes: bool = False
    encrypted: bool = False
    passphrase: Optional[str] = None


class BackupResponse(BaseModel):
    backup_id: str
    name: str
    backup_type: str
    status: str
    size_bytes: int
    include_volumes: bool
    encrypted: bool
    deployment_ids: List[str]
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class RestoreRequestBody(BaseModel):
    selective: bool = False
    deployment_ids: List[str] = Field(default_factory=list)
    overwrite_existing: bool = False
    restore_volumes: bool = False
    test_restore: bool = False


class RestoreAcceptedResponse(BaseModel):
    backup_id: str
    status: str
