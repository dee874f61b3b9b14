from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from paas_engine.node_manager.models import WorkerNode


class CreateRegistrationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    region: str = Field(..., min_length=1, max_length=64)


class RegistrationResponse(BaseModel):
    node_id: UUID
    registration_token: str
    expires_in_minutes: int


class NodeResponse(BaseModel):
    """Node response."""
    node_id: UUID
    name: str
    region: str
    host_address: Optional[str]
    runtime_agent_url: Optional[str]
    status: str
    cpu_total: Optional[int]
    cpu_used: Optional[int]
    memory_total_mb: Optional[int]
    memory_used_mb: Optional[int]
    disk_total_mb: Optional[int]
    disk_used_mb: Optional[int]
    container_count: int
    last_heartbeat_at: Optional[datetime]
    metadata: Dict[str, Any]

    @classmethod
    def from_node(cls, node: WorkerNode) -> "NodeResponse":
        return cls(
            node_id=node.node_id,
            name=node.name,
            region=node.region,
            host_address=node.host_address,
            runtime_agent_url=node.runtime_agent_url,
            status=node.status.value,
            cpu_total=node.cpu_total,
            cpu_used=node.cpu_used,
            memory_total_mb=node.memory_total_mb,
            memory_used_mb=node.memory_used_mb,
            disk_total_mb=node.disk_total_mb,
            disk_used_mb=node.disk_used_mb,
            container_count=node.container_count,
            last_heartbeat_at=node.last_heartbeat_at,
            metadata=node.metadata,
        )
