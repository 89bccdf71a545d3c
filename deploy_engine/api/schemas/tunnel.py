from typing import Any, Dict, Optional

from pydantic import BaseModel

from deploy_engine.api.schemas.deployment import TunnelOptions


class ComposeRequest(BaseModel):
    compose_source: str
    tunnel: Optional[TunnelOptions] = None


class InjectResponse(BaseModel):
    compose_source: str
    report: Dict[str, Any]
