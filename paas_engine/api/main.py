# paas_engine/api/main.py
"""Control plane HTTP API."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from paas_engine.api.routes.applications import router as applications_router
from paas_engine.api.routes.jobs import router as jobs_router
from paas_engine.api.routes.nodes import router as nodes_router
from paas_engine.api.routes.worker import router as worker_router
from paas_engine.container import Container
from paas_engine.core.errors import (
    AlreadyExistsError,
    AuthenticationError,
    CapacityError,
    InvalidStateError,
    LeaseError,
    NotFoundError,
    PaasError,
    TransientInfrastructureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (NotFoundError, 404),
    (AlreadyExistsError, 409),
    (LeaseError, 409),
    (InvalidStateError, 409),
    (CapacityError, 503),
    (TransientInfrastructureError, 503),
)


def status_for(error: PaasError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(container: Container) -> FastAPI:
    app = FastAPI(title="PaaS Control Plane API")
    app.state.container = container

    @app.exception_handler(PaasError)
    async def paas_error_handler(request: Request, exc: PaasError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"[api] {request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    app.include_router(worker_router)
    app.include_router(nodes_router)
    app.include_router(applications_router)
    app.include_router(jobs_router)
    return app
