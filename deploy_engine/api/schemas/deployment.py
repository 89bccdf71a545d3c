from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class TunnelOptions(BaseModel):
    endpoint: str
    agent_id: str
    secret: str
    image: Optional[str] = None
    log_level: Optional[str] = None
    health_file: Optional[str] = None


class DeploymentCreateRequest(BaseModel):
    template_ref: str
    stack_name: str
    environment: Dict[str, str] = Field(default_factory=dict)
    tunnel: Optional[TunnelOptions] = None
    auto_start: bool = True


class DeploymentTransitionRequest(BaseModel):
    operation: str


class DeploymentResponse(BaseModel):
    deployment_id: str
    template_ref: str
    stack_name: str
    status: str
    environment: Dict[str, str]
    include_tunnel: bool
    auto_start: bool
    tunnel_active: bool
    tunnel_url: str
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DeploymentListResponse(BaseModel):
    deployments: List[DeploymentResponse]
    count: int


class DeploymentLogResponse(BaseModel):
    level: str
    message: str
    timestamp: datetime


class ServiceStateResponse(BaseModel):
    state: str
    health: Optional[str] = None
