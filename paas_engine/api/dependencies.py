#paas_engine/api/dependencies.py

from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request

from paas_engine.builder.log import LiveLogStore
from paas_engine.container import Container
from paas_engine.core.errors import AuthenticationError
from paas_engine.core.service import JobQueue
from paas_engine.domain.scheduler import DeploymentScheduler
from paas_engine.domain.service import ApplicationService
from paas_engine.node_manager.models import WorkerNode
from paas_engine.node_manager.service import NodeRegistry


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_queue(container: Container = Depends(get_container)) -> JobQueue:
    return container.queue


def get_node_registry(container: Container = Depends(get_container)) -> NodeRegistry:
    return container.node_registry


def get_scheduler(container: Container = Depends(get_container)) -> DeploymentScheduler:
    return container.scheduler


def get_application_service(container: Container = Depends(get_container)) -> ApplicationService:
    return container.applications


def get_live_logs(container: Container = Depends(get_container)) -> LiveLogStore:
    return container.live_logs


def get_current_worker(
    authorization: Optional[str] = Header(default=None),
    x_node_id: Optional[str] = Header(default=None),
    registry: NodeRegistry = Depends(get_node_registry),
) -> WorkerNode:
    """Bearer token plus X-Node-Id header."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    if not x_node_id:
        raise HTTPException(status_code=401, detail="Missing X-Node-Id header")

    try:
        node_id = UUID(x_node_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid X-Node-Id header")

    try:
        return registry.authenticate(node_id, authorization[7:].strip())
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))


def worker_lease_owner(node: WorkerNode) -> str:
    """Lease owner recorded on jobs claimed over HTTP."""
    return f"node:{node.node_id}"
