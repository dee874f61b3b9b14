from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from paas_engine.node_manager.models import CapacityMetrics


class CapacityMetricsModel(BaseModel):
    """Self-reported node capacity. CPU in millicores, sizes in MB."""
    cpu_total: Optional[int] = Field(default=None, ge=0)
    cpu_used: Optional[int] = Field(default=None, ge=0)
    memory_total_mb: Optional[int] = Field(default=None, ge=0)
    memory_used_mb: Optional[int] = Field(default=None, ge=0)
    disk_total_mb: Optional[int] = Field(default=None, ge=0)
    disk_used_mb: Optional[int] = Field(default=None, ge=0)
    container_count: Optional[int] = Field(default=None, ge=0)

    def to_domain(self) -> CapacityMetrics:
        return CapacityMetrics(**self.model_dump())


class RegisterWorkerRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    region: str = Field(..., min_length=1, max_length=64)
    host_address: Optional[str] = None
    runtime_agent_url: Optional[str] = None
    metrics: Optional[CapacityMetricsModel] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    registration_token: Optional[str] = None


class RegisterWorkerResponse(BaseModel):
    node_id: UUID
    auth_token: str


class HeartbeatRequest(BaseModel):
    metrics: CapacityMetricsModel = Field(default_factory=CapacityMetricsModel)
    active_job_ids: List[UUID] = Field(default_factory=list)


class HeartbeatResponse(BaseModel):
    status: str
    renewed_job_ids: List[UUID] = Field(default_factory=list)
    lost_job_ids: List[UUID] = Field(default_factory=list)


class QueuedBuildResponse(BaseModel):
    job_id: UUID
    application_id: Optional[UUID]
    payload: Dict[str, Any]
    priority: int
    attempts_made: int
    created_at: datetime


class BuildStatusRequest(BaseModel):
    status: Literal["progress", "completed", "failed"]
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    error: Optional[str] = None
    retryable: bool = True
    result: Optional[Dict[str, Any]] = None


class BuildLogRequest(BaseModel):
    lines: List[str] = Field(default_factory=list)


class BuildLogResponse(BaseModel):
    job_id: UUID
    lines: List[str]
