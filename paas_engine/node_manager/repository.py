from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

from paas_engine.node_manager.models import NodeRegistration, WorkerNode


class NodeRepository(ABC):
    """
    Persistence contract for worker nodes and their registration tokens.
    """

    @abstractmethod
    def create(self, node: WorkerNode) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, node_id: UUID) -> Optional[WorkerNode]:
        raise NotImplementedError

    @abstractmethod
    def get_by_name(self, name: str) -> Optional[WorkerNode]:
        raise NotImplementedError

    @abstractmethod
    def update(self, node: WorkerNode) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[WorkerNode]:
        raise NotImplementedError

    @abstractmethod
    def list_by_region(self, region: str) -> List[WorkerNode]:
        raise NotImplementedError

    @abstractmethod
    def save_registration(self, registration: NodeRegistration) -> None:
        """Insert or replace the registration token of a node."""
        raise NotImplementedError

    @abstractmethod
    def get_registration(self, token_hash: str) -> Optional[NodeRegistration]:
        raise NotImplementedError
