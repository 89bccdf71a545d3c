from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from deploy_engine.api.container import get_lifecycle
from deploy_engine.api.schemas.deployment import (
    DeploymentCreateRequest,
    DeploymentListResponse,
    DeploymentLogResponse,
    DeploymentResponse,
    DeploymentTransitionRequest,
    ServiceStateResponse,
)
from deploy_engine.core.models import Deployment, DeploymentStatus

router = APIRouter(prefix="/deployments", tags=["deployments"])


def _to_response(deployment: Deployment) -> DeploymentResponse:
    return DeploymentResponse(
        deployment_id=deployment.deployment_id,
        template_ref=deployment.template_ref,
        stack_name=deployment.stack_name,
        status=deployment.status.value,
        environment=deployment.config.environment,
        include_tunnel=deployment.config.include_tunnel,
        auto_start=deployment.config.auto_start,
        tunnel_active=deployment.tunnel_active,
        tunnel_url=deployment.tunnel_url,
        error_message=deployment.error_message,
        created_at=deployment.created_at,
        updated_at=deployment.updated_at,
    )


@router.post("/", response_model=DeploymentResponse, status_code=202)
def create_deployment(
    request: DeploymentCreateRequest,
    service=Depends(get_lifecycle),
):
    deployment = service.create_deployment(
        template_ref=request.template_ref,
        stack_name=request.stack_name,
        environment=request.environment,
        tunnel_options=request.tunnel.model_dump(exclude_none=True) if request.tunnel else None,
        auto_start=request.auto_start,
    )
    return _to_response(deployment)


@router.get("/", response_model=DeploymentListResponse)
def list_deployments(
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    service=Depends(get_lifecycle),
):
    status_filter = None
    if status is not None:
        try:
            status_filter = DeploymentStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

    deployments = service.list_deployments(status=status_filter, limit=limit, offset=offset)
    return DeploymentListResponse(
        deployments=[_to_response(d) for d in deployments],
        count=len(deployments),
    )


@router.get("/{deployment_id}", response_model=DeploymentResponse)
def get_deployment(
    deployment_id: str,
    service=Depends(get_lifecycle),
):
    return _to_response(service.get_deployment(deployment_id))


@router.post("/{deployment_id}/transition", response_model=DeploymentResponse)
def transition_deployment(
    deployment_id: str,
    request: DeploymentTransitionRequest,
    service=Depends(get_lifecycle),
):
    return _to_response(service.transition_deployment(deployment_id, request.operation))


@router.delete("/{deployment_id}", status_code=204)
def delete_deployment(
    deployment_id: str,
    remove_volumes: bool = False,
    service=Depends(get_lifecycle),
):
    service.delete_deployment(deployment_id, remove_volumes=remove_volumes)
    return Response(status_code=204)


@router.get("/{deployment_id}/logs", response_model=List[DeploymentLogResponse])
def get_logs(
    deployment_id: str,
    limit: int = 100,
    service=Depends(get_lifecycle),
):
    return [
        DeploymentLogResponse(level=e.level.value, message=e.message, timestamp=e.timestamp)
        for e in service.get_logs(deployment_id, limit=limit)
    ]


@router.get("/{deployment_id}/services", response_model=Dict[str, ServiceStateResponse])
def get_service_status(
    deployment_id: str,
    service=Depends(get_lifecycle),
):
    return {
        name: ServiceStateResponse(state=state.state, health=state.health)
        for name, state in service.service_status(deployment_id).items()
    }
