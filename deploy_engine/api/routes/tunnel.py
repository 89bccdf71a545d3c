from fastapi import APIRouter, Depends

from deploy_engine.api.container import get_engine_settings
from deploy_engine.api.schemas.tunnel import ComposeRequest, InjectResponse
from deploy_engine.compose.document import parse_compose
from deploy_engine.compose.injector import TunnelInjector
from deploy_engine.core.models import TunnelConfig
from deploy_engine.core.validation import validate_tunnel_config

router = APIRouter(prefix="/tunnel", tags=["tunnel"])


def _injector(request: ComposeRequest, settings) -> TunnelInjector:
    tunnel = None
    if request.tunnel is not None:
        options = request.tunnel.model_dump(exclude_none=True)
        options.setdefault("log_level", settings.tunnel_log_level)
        tunnel = TunnelConfig.from_dict(options)
        validate_tunnel_config(tunnel)
    return TunnelInjector(tunnel, default_image=settings.tunnel_image)


@router.post("/validate")
def validate_compose(
    request: ComposeRequest,
    settings=Depends(get_engine_settings),
):
    doc = parse_compose(request.compose_source)
    return _injector(request, settings).validate(doc).to_dict()


@router.post("/preview")
def preview_injection(
    request: ComposeRequest,
    settings=Depends(get_engine_settings),
):
    doc = parse_compose(request.compose_source)
    return _injector(request, settings).preview(doc).to_dict()


@router.post("/inject", response_model=InjectResponse)
def inject_tunnel(
    request: ComposeRequest,
    settings=Depends(get_engine_settings),
):
    doc = parse_compose(request.compose_source)
    corrected, report = _injector(request, settings).inject(doc)
    return InjectResponse(compose_source=corrected.to_yaml(), report=report.to_dict())
