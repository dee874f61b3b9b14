"""Worker node repository."""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from paas_engine.core.errors import AlreadyExistsError, NotFoundError, PersistenceError
from paas_engine.infrastructure.postgres.models import NodeRegistrationORM, WorkerNodeORM
from paas_engine.node_manager.models import NodeRegistration, WorkerNode
from paas_engine.node_manager.repository import NodeRepository

logger = logging.getLogger(__name__)


def node_to_orm(node: WorkerNode) -> WorkerNodeORM:
    """Convert node domain model to ORM."""
    return WorkerNodeORM(
        node_id=node.node_id,
        name=node.name,
        region=node.region,
        host_address=node.host_address,
        runtime_agent_url=node.runtime_agent_url,
        status=node.status,
        cpu_total=node.cpu_total,
        cpu_used=node.cpu_used,
        memory_total_mb=node.memory_total_mb,
        memory_used_mb=node.memory_used_mb,
        disk_total_mb=node.disk_total_mb,
        disk_used_mb=node.disk_used_mb,
        container_count=node.container_count,
        last_heartbeat_at=node.last_heartbeat_at,
        last_alert_at=node.last_alert_at,
        auth_token_hash=node.auth_token_hash,
        node_metadata=node.metadata,
        created_at=node.created_at,
    )


def orm_to_node(orm: WorkerNodeORM) -> WorkerNode:
    """Convert ORM to node domain model."""
    return WorkerNode(
        node_id=orm.node_id,
        name=orm.name,
        region=orm.region,
        host_address=orm.host_address,
        runtime_agent_url=orm.runtime_agent_url,
        status=orm.status,
        cpu_total=orm.cpu_total,
        cpu_used=orm.cpu_used,
        memory_total_mb=orm.memory_total_mb,
        memory_used_mb=orm.memory_used_mb,
        disk_total_mb=orm.disk_total_mb,
        disk_used_mb=orm.disk_used_mb,
        container_count=orm.container_count,
        last_heartbeat_at=orm.last_heartbeat_at,
        last_alert_at=orm.last_alert_at,
        auth_token_hash=orm.auth_token_hash,
        metadata=orm.node_metadata or {},
        created_at=orm.created_at,
    )


class PostgresNodeRepository(NodeRepository):
    """Repository for worker nodes and their registration tokens."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self):
        return self._session_factory()

    def create(self, node: WorkerNode) -> None:
        session = self._get_session()
        try:
            session.add(node_to_orm(node))
            session.commit()
            logger.info(f"[node_repo] created node {node.node_id} ({node.name})")
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Node {node.name} already exists") from e
        finally:
            session.close()

    def get(self, node_id: UUID) -> Optional[WorkerNode]:
        session = self._get_session()
        try:
            orm = session.get(WorkerNodeORM, node_id)
            if not orm:
                return None
            return orm_to_node(orm)
        finally:
            session.close()

    def get_by_name(self, name: str) -> Optional[WorkerNode]:
        session = self._get_session()
        try:
            orm = session.query(WorkerNodeORM).filter(
                WorkerNodeORM.name == name
            ).first()
            if not orm:
                return None
            return orm_to_node(orm)
        finally:
            session.close()

    def update(self, node: WorkerNode) -> None:
        session = self._get_session()
        try:
            orm = session.get(WorkerNodeORM, node.node_id)
            if not orm:
                raise NotFoundError(f"Node {node.node_id} not found")

            orm.host_address = node.host_address
            orm.runtime_agent_url = node.runtime_agent_url
            orm.status = node.status
            orm.cpu_total = node.cpu_total
            orm.cpu_used = node.cpu_used
            orm.memory_total_mb = node.memory_total_mb
            orm.memory_used_mb = node.memory_used_mb
            orm.disk_total_mb = node.disk_total_mb
            orm.disk_used_mb = node.disk_used_mb
            orm.container_count = node.container_count
            orm.last_heartbeat_at = node.last_heartbeat_at
            orm.last_alert_at = node.last_alert_at
            orm.auth_token_hash = node.auth_token_hash
            orm.node_metadata = node.metadata

            session.commit()
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update node: {e}") from e
        finally:
            session.close()

    def list_all(self) -> List[WorkerNode]:
        session = self._get_session()
        try:
            results = session.query(WorkerNodeORM).order_by(WorkerNodeORM.created_at.asc()).all()
            return [orm_to_node(orm) for orm in results]
        finally:
            session.close()

    def list_by_region(self, region: str) -> List[WorkerNode]:
        session = self._get_session()
        try:
            results = session.query(WorkerNodeORM).filter(
                WorkerNodeORM.region == region
            ).order_by(WorkerNodeORM.created_at.asc()).all()
            return [orm_to_node(orm) for orm in results]
        finally:
            session.close()

    # -------------------------
    # REGISTRATION TOKENS
    # -------------------------

    def save_registration(self, registration: NodeRegistration) -> None:
        """Upsert; issuing a new token replaces the node's previous ones."""
        session = self._get_session()
        try:
            session.query(NodeRegistrationORM).filter(
                NodeRegistrationORM.node_id == registration.node_id,
                NodeRegistrationORM.token_hash != registration.token_hash,
            ).delete(synchronize_session=False)

            orm = session.get(NodeRegistrationORM, registration.token_hash)
            if orm is None:
                orm = NodeRegistrationORM(token_hash=registration.token_hash)
                session.add(orm)
            orm.node_id = registration.node_id
            orm.expires_at = registration.expires_at
            orm.used_at = registration.used_at

            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to save registration: {e}") from e
        finally:
            session.close()

    def get_registration(self, token_hash: str) -> Optional[NodeRegistration]:
        session = self._get_session()
        try:
            orm = session.get(NodeRegistrationORM, token_hash)
            if not orm:
                return None
            return NodeRegistration(
                node_id=orm.node_id,
                token_hash=orm.token_hash,
                expires_at=orm.expires_at,
                used_at=orm.used_at,
            )
        finally:
            session.close()
