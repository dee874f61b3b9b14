# worker_agent/runtime_server.py
"""
Runtime Agent - Runs on compute nodes.
Receives service requests from the control plane and manages containers.
"""

import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from paas_engine.core.errors import FatalAgentError, PaasError
from paas_engine.runtime.backend import ContainerBackend, ServiceSpec

logger = logging.getLogger(__name__)


# ============================================
# REQUEST/RESPONSE MODELS
# ============================================

class ServiceRequest(BaseModel):
    """Run (or replace) a service."""
    name: str = Field(..., min_length=1, description="Service name, e.g. 'paas-my-app'")
    slug_url: str = Field(..., min_length=1, description="Where the slug can be fetched from")
    replicas: int = Field(default=1, ge=0)
    memory_mb: Optional[int] = Field(default=None, gt=0)
    cpu_millicores: Optional[int] = Field(default=None, gt=0)
    port: int = 5000
    env: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0)


class ServiceResponse(BaseModel):
    name: str
    replicas: int
    container_ids: List[str] = Field(default_factory=list)


class NodeInfoResponse(BaseModel):
    """Node information response."""
    docker_version: str
    containers_running: int
    containers_total: int
    images_count: int
    memory_total: int  # bytes
    cpu_count: int


def create_runtime_app(backend: ContainerBackend) -> FastAPI:
    app = FastAPI(
        title="Runtime Agent",
        description="Container runtime agent for the PaaS control plane",
        version="1.0.0",
    )

    def _fail(action: str, error: Exception):
        logger.error(f"[runtime] {action} failed: {error}")
        status = 503 if isinstance(error, FatalAgentError) else 500
        raise HTTPException(status_code=status, detail=str(error))

    # ============================================
    # ENDPOINTS
    # ============================================

    @app.get("/health")
    def health_check():
        try:
            backend.ping()
        except FatalAgentError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"status": "healthy", "docker_connected": True}

    @app.get("/info", response_model=NodeInfoResponse)
    def get_node_info():
        try:
            return NodeInfoResponse(**backend.info())
        except PaasError as e:
            _fail("info", e)

    @app.post("/services", response_model=ServiceResponse)
    def run_service(request: ServiceRequest):
        spec = ServiceSpec(
            name=request.name,
            slug_url=request.slug_url,
            replicas=request.replicas,
            memory_mb=request.memory_mb,
            cpu_millicores=request.cpu_millicores,
            port=request.port,
            env=request.env,
            labels=request.labels,
        )
        try:
            return ServiceResponse(**backend.run_service(spec))
        except PaasError as e:
            _fail(f"run {request.name}", e)

    @app.post("/services/{name}/scale", response_model=ServiceResponse)
    def scale_service(name: str, request: ScaleRequest):
        try:
            return ServiceResponse(**backend.scale_service(name, request.replicas))
        except PaasError as e:
            _fail(f"scale {name}", e)

    @app.post("/services/{name}/restart", response_model=ServiceResponse)
    def restart_service(name: str):
        try:
            return ServiceResponse(**backend.restart_service(name))
        except PaasError as e:
            _fail(f"restart {name}", e)

    @app.get("/services/{name}/stats")
    def service_stats(name: str):
        try:
            return backend.service_stats(name)
        except PaasError as e:
            _fail(f"stats {name}", e)

    @app.delete("/services/{name}")
    def remove_service(name: str):
        try:
            removed = backend.remove_service(name)
        except PaasError as e:
            _fail(f"remove {name}", e)
        return {"status": "removed", "name": name, "containers_removed": removed}

    return app
