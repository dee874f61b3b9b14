from copy import deepcopy
from threading import Lock
from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from paas_engine.core.errors import AlreadyExistsError, NotFoundError
from paas_engine.domain.models import (
    Application,
    Build,
    BuildCacheRecord,
    Deployment,
    Plan,
)
from paas_engine.domain.repository import (
    ApplicationRepository,
    BuildCacheRepository,
    BuildRepository,
    DeploymentRepository,
    PlanRepository,
)


class InMemoryPlanRepository(PlanRepository):
    def __init__(self):
        self._store: Dict[UUID, Plan] = {}
        self._lock = Lock()

    def create(self, plan: Plan) -> None:
        with self._lock:
            if plan.plan_id in self._store:
                raise AlreadyExistsError(f"Plan {plan.plan_id} already exists")
            self._store[plan.plan_id] = deepcopy(plan)

    def get(self, plan_id: UUID) -> Optional[Plan]:
        with self._lock:
            plan = self._store.get(plan_id)
            return deepcopy(plan) if plan else None


class InMemoryApplicationRepository(ApplicationRepository):
    def __init__(self):
        self._store: Dict[UUID, Application] = {}
        self._lock = Lock()

    def create(self, app: Application) -> None:
        with self._lock:
            if app.application_id in self._store:
                raise AlreadyExistsError(f"Application {app.application_id} already exists")
            if any(a.slug == app.slug for a in self._store.values()):
                raise AlreadyExistsError(f"Slug {app.slug} already taken")
            self._store[app.application_id] = deepcopy(app)

    def get(self, application_id: UUID) -> Optional[Application]:
        with self._lock:
            app = self._store.get(application_id)
            return deepcopy(app) if app else None

    def update(self, app: Application) -> None:
        with self._lock:
            if app.application_id not in self._store:
                raise NotFoundError(f"Application {app.application_id} not found")
            self._store[app.application_id] = deepcopy(app)

    def delete(self, application_id: UUID) -> None:
        with self._lock:
            self._store.pop(application_id, None)


class InMemoryDeploymentRepository(DeploymentRepository):
    def __init__(self):
        self._store: Dict[UUID, Deployment] = {}
        self._lock = Lock()

    def _insert(self, deployment: Deployment) -> None:
        with self._lock:
            self._store[deployment.deployment_id] = deepcopy(deployment)

    def get(self, deployment_id: UUID) -> Optional[Deployment]:
        with self._lock:
            deployment = self._store.get(deployment_id)
            return deepcopy(deployment) if deployment else None

    def update(self, deployment: Deployment) -> None:
        with self._lock:
            if deployment.deployment_id not in self._store:
                raise NotFoundError(f"Deployment {deployment.deployment_id} not found")
            self._store[deployment.deployment_id] = deepcopy(deployment)

    def get_by_version(self, application_id: UUID, version: int) -> Optional[Deployment]:
        with self._lock:
            for d in self._store.values():
                if d.application_id == application_id and d.version == version:
                    return deepcopy(d)
            return None

    def get_active(self, application_id: UUID) -> Optional[Deployment]:
        with self._lock:
            for d in self._store.values():
                if d.application_id == application_id and d.is_active:
                    return deepcopy(d)
            return None

    def activate(self, deployment: Deployment) -> Optional[Deployment]:
        with self._lock:
            previous = None
            for d in self._store.values():
                if (
                    d.application_id == deployment.application_id
                    and d.is_active
                    and d.deployment_id != deployment.deployment_id
                ):
                    d.is_active = False
                    previous = deepcopy(d)

            deployment.is_active = True
            self._store[deployment.deployment_id] = deepcopy(deployment)
            return previous

    def list_for_application(self, application_id: UUID, limit: int = 50) -> List[Deployment]:
        with self._lock:
            results = sorted(
                (d for d in self._store.values() if d.application_id == application_id),
                key=lambda d: d.version,
                reverse=True,
            )
            return [deepcopy(d) for d in results[:limit]]


class InMemoryBuildRepository(BuildRepository):
    """
    Builds plus the per-application sequence counters.

    Shares its DeploymentRepository so create_pending can insert the
    build and its deployment under one lock.
    """

    def __init__(self, deployments: InMemoryDeploymentRepository):
        self._store: Dict[UUID, Build] = {}
        self._sequences: Dict[UUID, Tuple[int, int]] = {}
        self._deployments = deployments
        self._lock = Lock()

    def create_pending(
        self,
        application_id: UUID,
        triggered_by: Optional[UUID] = None,
    ) -> Tuple[Build, Deployment]:
        with self._lock:
            last_build, last_version = self._sequences.get(application_id, (0, 0))
            build_number = last_build + 1
            version = last_version + 1
            self._sequences[application_id] = (build_number, version)

            build = Build(
                build_id=uuid4(),
                application_id=application_id,
                build_number=build_number,
                triggered_by=triggered_by,
            )
            deployment = Deployment(
                deployment_id=uuid4(),
                application_id=application_id,
                version=version,
                build_id=build.build_id,
            )
            self._store[build.build_id] = deepcopy(build)
            self._deployments._insert(deployment)
            return deepcopy(build), deployment

    def get(self, build_id: UUID) -> Optional[Build]:
        with self._lock:
            build = self._store.get(build_id)
            return deepcopy(build) if build else None

    def update(self, build: Build) -> None:
        with self._lock:
            if build.build_id not in self._store:
                raise NotFoundError(f"Build {build.build_id} not found")
            self._store[build.build_id] = deepcopy(build)

    def list_for_application(self, application_id: UUID, limit: int = 50) -> List[Build]:
        with self._lock:
            results = sorted(
                (b for b in self._store.values() if b.application_id == application_id),
                key=lambda b: b.build_number,
                reverse=True,
            )
            return [deepcopy(b) for b in results[:limit]]


class InMemoryBuildCacheRepository(BuildCacheRepository):
    def __init__(self):
        self._store: Dict[Tuple[UUID, str], BuildCacheRecord] = {}
        self._lock = Lock()

    def get(self, application_id: UUID, cache_key: str) -> Optional[BuildCacheRecord]:
        with self._lock:
            record = self._store.get((application_id, cache_key))
            return deepcopy(record) if record else None

    def upsert(self, record: BuildCacheRecord) -> None:
        with self._lock:
            self._store[(record.application_id, record.cache_key)] = deepcopy(record)

    def delete(self, application_id: UUID, cache_key: str) -> None:
        with self._lock:
            self._store.pop((application_id, cache_key), None)

    def list_for_application(self, application_id: UUID) -> List[BuildCacheRecord]:
        with self._lock:
            return [
                deepcopy(r) for (app_id, _), r in self._store.items()
                if app_id == application_id
            ]

    def list_all(self) -> List[BuildCacheRecord]:
        with self._lock:
            return [deepcopy(r) for r in self._store.values()]
