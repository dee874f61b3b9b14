#paas_engine/node_manager/models.py

"""Worker node models."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class NodeStatus(Enum):
    """Node status."""
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    DRAINING = "draining"


SCHEDULABLE_STATUSES = (NodeStatus.ONLINE, NodeStatus.DEGRADED)


@dataclass
class CapacityMetrics:
    """Capacity snapshot reported by a node heartbeat."""
    cpu_total: Optional[int] = None  # millicores
    cpu_used: Optional[int] = None
    memory_total_mb: Optional[int] = None
    memory_used_mb: Optional[int] = None
    disk_total_mb: Optional[int] = None
    disk_used_mb: Optional[int] = None
    container_count: Optional[int] = None


@dataclass
class WorkerNode:
    """Host able to run containers."""
    node_id: UUID
    name: str
    region: str

    host_address: Optional[str] = None
    runtime_agent_url: Optional[str] = None

    status: NodeStatus = NodeStatus.OFFLINE

    cpu_total: Optional[int] = None  # millicores
    cpu_used: Optional[int] = None
    memory_total_mb: Optional[int] = None
    memory_used_mb: Optional[int] = None
    disk_total_mb: Optional[int] = None
    disk_used_mb: Optional[int] = None
    container_count: int = 0

    last_heartbeat_at: Optional[datetime] = None
    last_alert_at: Optional[datetime] = None

    auth_token_hash: Optional[str] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def apply_metrics(self, metrics: CapacityMetrics) -> None:
        """Overwrite reported counters. Missing values keep the previous report."""
        if metrics.cpu_total is not None:
            self.cpu_total = metrics.cpu_total
        if metrics.cpu_used is not None:
            self.cpu_used = metrics.cpu_used
        if metrics.memory_total_mb is not None:
            self.memory_total_mb = metrics.memory_total_mb
        if metrics.memory_used_mb is not None:
            self.memory_used_mb = metrics.memory_used_mb
        if metrics.disk_total_mb is not None:
            self.disk_total_mb = metrics.disk_total_mb
        if metrics.disk_used_mb is not None:
            self.disk_used_mb = metrics.disk_used_mb
        if metrics.container_count is not None:
            self.container_count = metrics.container_count

    def is_schedulable(self) -> bool:
        return self.status in SCHEDULABLE_STATUSES


@dataclass
class NodeRegistration:
    """One-time registration token for a pre-created node."""
    node_id: UUID
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now

    @staticmethod
    def expiry(now: datetime, ttl_minutes: int) -> datetime:
        return now + timedelta(minutes=ttl_minutes)
