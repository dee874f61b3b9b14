"""Capacity-aware node placement."""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from paas_engine.core.errors import CapacityError
from paas_engine.node_manager.models import SCHEDULABLE_STATUSES, NodeStatus, WorkerNode
from paas_engine.node_manager.repository import NodeRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapacityRequirement:
    """Resources a placement needs. None means no requirement for that dimension."""
    cpu_millicores: Optional[int] = None
    memory_mb: Optional[int] = None
    disk_mb: Optional[int] = None

    @classmethod
    def for_plan(cls, plan, replicas: int = 1) -> "CapacityRequirement":
        replicas = max(replicas, 1)
        return cls(
            cpu_millicores=plan.cpu_millicores * replicas if plan.cpu_millicores else None,
            memory_mb=plan.memory_mb * replicas if plan.memory_mb else None,
            disk_mb=plan.storage_mb if plan.storage_mb else None,
        )


def has_headroom(total: Optional[int], used: Optional[int], needed: Optional[int]) -> bool:
    if needed is None or needed <= 0:
        return True
    if total is None or total <= 0:
        return False
    return total - (used or 0) >= needed


def has_capacity(node: WorkerNode, requirement: Optional[CapacityRequirement]) -> bool:
    if requirement is None:
        return True
    return (
        has_headroom(node.cpu_total, node.cpu_used, requirement.cpu_millicores)
        and has_headroom(node.memory_total_mb, node.memory_used_mb, requirement.memory_mb)
        and has_headroom(node.disk_total_mb, node.disk_used_mb, requirement.disk_mb)
    )


def memory_utilization(node: WorkerNode) -> float:
    if not node.memory_total_mb or node.memory_total_mb <= 0:
        return 1.0
    return (node.memory_used_mb or 0) / node.memory_total_mb


def select_node(
    nodes: Iterable[WorkerNode],
    region: str,
    requirement: Optional[CapacityRequirement] = None,
) -> Optional[WorkerNode]:
    """
    Pick the best node in a region.

    Online nodes win over degraded ones; ties go to the lowest memory
    utilization. Returns None when no node has headroom.
    """
    candidates: List[WorkerNode] = [
        node for node in nodes
        if node.region == region
        and node.status in SCHEDULABLE_STATUSES
        and has_capacity(node, requirement)
    ]
    if not candidates:
        return None

    candidates.sort(key=lambda n: (0 if n.status == NodeStatus.ONLINE else 1, memory_utilization(n)))
    return candidates[0]


class NodeScheduler:
    """Selects nodes from the registry. Does not reserve capacity."""

    def __init__(self, node_repo: NodeRepository):
        self._node_repo = node_repo

    def select_node(
        self,
        region: str,
        requirement: Optional[CapacityRequirement] = None,
    ) -> Optional[WorkerNode]:
        nodes = self._node_repo.list_by_region(region)
        selected = select_node(nodes, region, requirement)

        if selected is None:
            logger.info(f"[scheduler] no node with headroom in region {region} for {requirement}")
        else:
            logger.info(f"[scheduler] selected node {selected.node_id} ({selected.name}) in {region}")
        return selected

    def place(self, region: str, requirement: Optional[CapacityRequirement] = None) -> WorkerNode:
        """
        Select a node and re-validate it from a fresh read right before use.

        Raises CapacityError (retryable) when nothing qualifies.
        """
        selected = self.select_node(region, requirement)
        if selected is None:
            raise CapacityError(f"Insufficient capacity in region {region}")

        fresh = self._node_repo.get(selected.node_id)
        if fresh is None or not fresh.is_schedulable() or not has_capacity(fresh, requirement):
            raise CapacityError(
                f"Node {selected.node_id} lost headroom before placement in region {region}"
            )
        return fresh

