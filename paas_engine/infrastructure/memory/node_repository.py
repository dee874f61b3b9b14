from copy import deepcopy
from threading import Lock
from typing import Dict, List, Optional
from uuid import UUID

from paas_engine.core.errors import AlreadyExistsError, NotFoundError
from paas_engine.node_manager.models import NodeRegistration, WorkerNode
from paas_engine.node_manager.repository import NodeRepository


class InMemoryNodeRepository(NodeRepository):
    def __init__(self):
        self._nodes: Dict[UUID, WorkerNode] = {}
        self._registrations: Dict[str, NodeRegistration] = {}
        self._lock = Lock()

    def create(self, node: WorkerNode) -> None:
        with self._lock:
            if node.node_id in self._nodes:
                raise AlreadyExistsError(f"Node {node.node_id} already exists")
            if any(n.name == node.name for n in self._nodes.values()):
                raise AlreadyExistsError(f"Node name {node.name} already taken")
            self._nodes[node.node_id] = deepcopy(node)

    def get(self, node_id: UUID) -> Optional[WorkerNode]:
        with self._lock:
            node = self._nodes.get(node_id)
            return deepcopy(node) if node else None

    def get_by_name(self, name: str) -> Optional[WorkerNode]:
        with self._lock:
            for node in self._nodes.values():
                if node.name == name:
                    return deepcopy(node)
            return None

    def update(self, node: WorkerNode) -> None:
        with self._lock:
            if node.node_id not in self._nodes:
                raise NotFoundError(f"Node {node.node_id} not found")
            self._nodes[node.node_id] = deepcopy(node)

    def list_all(self) -> List[WorkerNode]:
        with self._lock:
            return sorted((deepcopy(n) for n in self._nodes.values()), key=lambda n: n.created_at)

    def list_by_region(self, region: str) -> List[WorkerNode]:
        return [n for n in self.list_all() if n.region == region]

    def save_registration(self, registration: NodeRegistration) -> None:
        with self._lock:
            for token_hash, existing in list(self._registrations.items()):
                if existing.node_id == registration.node_id and token_hash != registration.token_hash:
                    del self._registrations[token_hash]
            self._registrations[registration.token_hash] = deepcopy(registration)

    def get_registration(self, token_hash: str) -> Optional[NodeRegistration]:
        with self._lock:
            registration = self._registrations.get(token_hash)
            return deepcopy(registration) if registration else None
