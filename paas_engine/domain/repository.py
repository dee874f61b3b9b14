from abc import ABC, abstractmethod
from typing import List, Optional, Tuple
from uuid import UUID

from paas_engine.domain.models import (
    Application,
    Build,
    BuildCacheRecord,
    Deployment,
    Plan,
)


class PlanRepository(ABC):

    @abstractmethod
    def create(self, plan: Plan) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, plan_id: UUID) -> Optional[Plan]:
        raise NotImplementedError


class ApplicationRepository(ABC):

    @abstractmethod
    def create(self, app: Application) -> None:
        """Must fail if the slug is already taken."""
        raise NotImplementedError

    @abstractmethod
    def get(self, application_id: UUID) -> Optional[Application]:
        raise NotImplementedError

    @abstractmethod
    def update(self, app: Application) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, application_id: UUID) -> None:
        raise NotImplementedError


class BuildRepository(ABC):

    @abstractmethod
    def create_pending(
        self,
        application_id: UUID,
        triggered_by: Optional[UUID] = None,
    ) -> Tuple[Build, Deployment]:
        """
        Allocate the next build number and deployment version of an
        application and insert a pending Build and its Deployment.

        Runs in one transaction holding a lock on the application's
        sequence row, so concurrent callers never share a number.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, build_id: UUID) -> Optional[Build]:
        raise NotImplementedError

    @abstractmethod
    def update(self, build: Build) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_for_application(self, application_id: UUID, limit: int = 50) -> List[Build]:
        """Newest first."""
        raise NotImplementedError


class DeploymentRepository(ABC):

    @abstractmethod
    def get(self, deployment_id: UUID) -> Optional[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def update(self, deployment: Deployment) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_by_version(self, application_id: UUID, version: int) -> Optional[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def get_active(self, application_id: UUID) -> Optional[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def activate(self, deployment: Deployment) -> Optional[Deployment]:
        """
        Persist the deployment as the only active one of its application.
        Returns the previously active deployment (already persisted inactive).
        """
        raise NotImplementedError

    @abstractmethod
    def list_for_application(self, application_id: UUID, limit: int = 50) -> List[Deployment]:
        """Newest version first."""
        raise NotImplementedError


class BuildCacheRepository(ABC):

    @abstractmethod
    def get(self, application_id: UUID, cache_key: str) -> Optional[BuildCacheRecord]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, record: BuildCacheRecord) -> None:
        """Unique on (application_id, cache_key)."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, application_id: UUID, cache_key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_for_application(self, application_id: UUID) -> List[BuildCacheRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[BuildCacheRecord]:
        raise NotImplementedError
