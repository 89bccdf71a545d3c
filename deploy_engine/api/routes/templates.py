from typing import List

from fastapi import APIRouter, Depends

from deploy_engine.api.container import get_lifecycle

router = APIRouter(prefix="/templates", tags=["templates"])


@router.get("/", response_model=List[str])
def list_templates(service=Depends(get_lifecycle)):
    return service.list_templates()
