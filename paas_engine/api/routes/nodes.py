# paas_engine/api/routes/nodes.py
"""Node management API routes."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from paas_engine.api.dependencies import get_node_registry
from paas_engine.api.schemas.node import (
    CreateRegistrationRequest,
    NodeResponse,
    RegistrationResponse,
)
from paas_engine.node_manager.service import NodeRegistry

router = APIRouter(prefix="/api/paas/nodes", tags=["nodes"])


@router.post("/registrations", response_model=RegistrationResponse)
def create_registration(
    request: CreateRegistrationRequest,
    registry: NodeRegistry = Depends(get_node_registry),
):
    """
    Pre-create a node and issue its one-time registration token.

    The worker agent on that host registers with the token.
    """
    node_id, token = registry.create_registration(request.name, request.region)
    return RegistrationResponse(
        node_id=node_id,
        registration_token=token,
        expires_in_minutes=registry.registration_ttl_minutes,
    )


@router.get("", response_model=List[NodeResponse])
def list_nodes(
    region: Optional[str] = None,
    registry: NodeRegistry = Depends(get_node_registry),
):
    return [NodeResponse.from_node(node) for node in registry.list_nodes(region)]


@router.get("/{node_id}", response_model=NodeResponse)
def get_node(node_id: UUID, registry: NodeRegistry = Depends(get_node_registry)):
    node = registry.get(node_id)
    if not node:
        raise HTTPException(status_code=404, detail="Node not found")
    return NodeResponse.from_node(node)


@router.post("/{node_id}/drain", response_model=NodeResponse)
def drain_node(node_id: UUID, registry: NodeRegistry = Depends(get_node_registry)):
    return NodeResponse.from_node(registry.drain(node_id))


@router.post("/{node_id}/undrain", response_model=NodeResponse)
def undrain_node(node_id: UUID, registry: NodeRegistry = Depends(get_node_registry)):
    return NodeResponse.from_node(registry.undrain(node_id))
