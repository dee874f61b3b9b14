"""Node registry service."""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from paas_engine.core.errors import AuthenticationError, NotFoundError, ValidationError
from paas_engine.node_manager.models import (
    CapacityMetrics,
    NodeRegistration,
    NodeStatus,
    WorkerNode,
)
from paas_engine.node_manager.repository import NodeRepository

logger = logging.getLogger(__name__)

CAPACITY_THRESHOLD = 0.9


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _ratio(used: Optional[int], total: Optional[int]) -> Optional[float]:
    if used is None or not total or total <= 0:
        return None
    return used / total


def capacity_alerts(node: WorkerNode, threshold: float = CAPACITY_THRESHOLD) -> List[str]:
    """Human-readable alerts for every dimension at or above the threshold."""
    alerts = []
    for label, used, total in (
        ("CPU", node.cpu_used, node.cpu_total),
        ("Memory", node.memory_used_mb, node.memory_total_mb),
        ("Disk", node.disk_used_mb, node.disk_total_mb),
    ):
        ratio = _ratio(used, total)
        if ratio is not None and ratio >= threshold:
            alerts.append(f"{label} usage at {ratio * 100:.1f}%")
    return alerts


@dataclass
class NodeInfo:
    """What a worker reports about itself at registration."""
    name: str
    region: str
    host_address: Optional[str] = None
    runtime_agent_url: Optional[str] = None
    metrics: Optional[CapacityMetrics] = None
    metadata: Optional[Dict] = None


class NodeRegistry:
    """Tracks worker nodes, their capacity and liveness."""

    def __init__(
        self,
        node_repo: NodeRepository,
        *,
        registration_ttl_minutes: int = 30,
        alert_cooldown_minutes: int = 15,
        require_registration_token: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._node_repo = node_repo
        self.registration_ttl_minutes = registration_ttl_minutes
        self.alert_cooldown = timedelta(minutes=alert_cooldown_minutes)
        self.require_registration_token = require_registration_token
        self._clock = clock

    # ============================================
    # REGISTRATION
    # ============================================

    def create_registration(self, name: str, region: str) -> Tuple[UUID, str]:
        """Pre-create an offline node and issue a one-time registration token."""
        if not name or not region:
            raise ValidationError("name and region are required")

        node = WorkerNode(node_id=uuid4(), name=name, region=region, status=NodeStatus.OFFLINE)
        self._node_repo.create(node)

        token = secrets.token_urlsafe(32)
        now = self._clock()
        self._node_repo.save_registration(NodeRegistration(
            node_id=node.node_id,
            token_hash=hash_token(token),
            expires_at=NodeRegistration.expiry(now, self.registration_ttl_minutes),
        ))

        logger.info(f"[registry] registration created for node {node.node_id} ({name}, {region})")
        return node.node_id, token

    def register(self, info: NodeInfo, registration_token: Optional[str] = None) -> Tuple[UUID, str]:
        """
        Register a worker and issue its auth token.

        A registration token binds the worker to a pre-created node; without
        one a new node is created (unless tokens are required).
        """
        if not info.name:
            raise ValidationError("name is required")
        if not info.region:
            raise ValidationError("region is required")

        now = self._clock()
        if registration_token:
            registration = self._node_repo.get_registration(hash_token(registration_token))
            if registration is None or not registration.is_valid(now):
                raise AuthenticationError("Registration token is invalid or expired")
            node = self._node_repo.get(registration.node_id)
            if node is None:
                raise NotFoundError(f"Node {registration.node_id} not found")
            registration.used_at = now
            self._node_repo.save_registration(registration)
            creating = False
        elif self.require_registration_token:
            raise AuthenticationError("Registration token required")
        else:
            node = self._node_repo.get_by_name(info.name)
            creating = node is None
            if creating:
                node = WorkerNode(node_id=uuid4(), name=info.name, region=info.region)

        auth_token = secrets.token_urlsafe(32)
        node.name = info.name
        node.region = info.region
        node.host_address = info.host_address
        node.runtime_agent_url = info.runtime_agent_url
        node.metadata = dict(info.metadata or {})
        node.auth_token_hash = hash_token(auth_token)
        node.last_heartbeat_at = now
        if info.metrics:
            node.apply_metrics(info.metrics)
        node.status = self._evaluate_status(node)

        if creating:
            self._node_repo.create(node)
        else:
            self._node_repo.update(node)

        logger.info(f"[registry] node {node.node_id} ({node.name}) registered in {node.region} as {node.status.value}")
        return node.node_id, auth_token

    def authenticate(self, node_id: UUID, token: str) -> WorkerNode:
        node = self._node_repo.get(node_id)
        if node is None or not node.auth_token_hash:
            raise AuthenticationError("Unknown worker")
        if not hmac.compare_digest(node.auth_token_hash, hash_token(token)):
            raise AuthenticationError("Invalid worker credentials")
        return node

    # ============================================
    # HEARTBEAT
    # ============================================

    def heartbeat(self, node_id: UUID, metrics: CapacityMetrics) -> WorkerNode:
        """Store self-reported capacity and re-evaluate the node status."""
        node = self._require_node(node_id)
        now = self._clock()

        node.apply_metrics(metrics)
        node.last_heartbeat_at = now
        node.status = self._evaluate_status(node)

        alerts = capacity_alerts(node)
        if alerts and (node.last_alert_at is None or now - node.last_alert_at >= self.alert_cooldown):
            logger.warning(f"[registry] capacity alert for node {node.name}: {', '.join(alerts)}")
            node.last_alert_at = now

        self._node_repo.update(node)
        return node

    def mark_stale_nodes(self, stale_threshold_minutes: int = 5) -> List[WorkerNode]:
        """Mark nodes without a recent heartbeat offline."""
        cutoff = self._clock() - timedelta(minutes=stale_threshold_minutes)

        stale = [
            node for node in self._node_repo.list_all()
            if node.status != NodeStatus.OFFLINE
            and (node.last_heartbeat_at is None or node.last_heartbeat_at < cutoff)
        ]
        for node in stale:
            node.status = NodeStatus.OFFLINE
            self._node_repo.update(node)
            logger.warning(f"[registry] node {node.node_id} ({node.name}) marked offline, no heartbeat since {node.last_heartbeat_at}")

        return stale

    # ============================================
    # ADMIN
    # ============================================

    def drain(self, node_id: UUID) -> WorkerNode:
        node = self._require_node(node_id)
        node.status = NodeStatus.DRAINING
        self._node_repo.update(node)
        logger.info(f"[registry] node {node.node_id} draining")
        return node

    def undrain(self, node_id: UUID) -> WorkerNode:
        node = self._require_node(node_id)
        if node.status != NodeStatus.DRAINING:
            return node
        node.status = NodeStatus.ONLINE
        node.status = self._evaluate_status(node)
        self._node_repo.update(node)
        return node

    def get(self, node_id: UUID) -> Optional[WorkerNode]:
        return self._node_repo.get(node_id)

    def list_nodes(self, region: Optional[str] = None) -> List[WorkerNode]:
        if region:
            return self._node_repo.list_by_region(region)
        return self._node_repo.list_all()

    # ============================================
    # INTERNAL
    # ============================================

    def _require_node(self, node_id: UUID) -> WorkerNode:
        node = self._node_repo.get(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found")
        return node

    @staticmethod
    def _evaluate_status(node: WorkerNode) -> NodeStatus:
        if node.status == NodeStatus.DRAINING:
            return NodeStatus.DRAINING
        return NodeStatus.DEGRADED if capacity_alerts(node) else NodeStatus.ONLINE
