from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from deploy_engine.api.routes.backups import router as backups_router
from deploy_engine.api.routes.deployments import router as deployments_router
from deploy_engine.api.routes.templates import router as templates_router
from deploy_engine.api.routes.tunnel import router as tunnel_router
from deploy_engine.core.errors import (
    AlreadyExists,
    InvalidTransition,
    NotFound,
    StackNameConflict,
    ValidationError,
)

app = FastAPI(title="Deploy Engine API")


@app.get("/health")
def health():
    return {"status": "ok"}


# -------------------------
# Error mapping
# -------------------------

@app.exception_handler(NotFound)
def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StackNameConflict)
def conflict_handler(request: Request, exc: StackNameConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(AlreadyExists)
def already_exists_handler(request: Request, exc: AlreadyExists):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


app.include_router(deployments_router)
app.include_router(backups_router)
app.include_router(tunnel_router)
app.include_router(templates_router)
