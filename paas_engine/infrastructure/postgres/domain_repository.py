"""Domain repository implementations."""

import logging
from typing import List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from paas_engine.core.errors import AlreadyExistsError, NotFoundError, PersistenceError
from paas_engine.domain.models import (
    Application,
    Build,
    BuildCacheRecord,
    Deployment,
    DeploymentStatus,
    Plan,
)
from paas_engine.domain.repository import (
    ApplicationRepository,
    BuildCacheRepository,
    BuildRepository,
    DeploymentRepository,
    PlanRepository,
)
from paas_engine.infrastructure.postgres.models import (
    ApplicationORM,
    BuildCacheORM,
    BuildORM,
    BuildSequenceORM,
    DeploymentORM,
    PlanORM,
)

logger = logging.getLogger(__name__)


# ============================================
# MAPPING FUNCTIONS
# ============================================

def orm_to_plan(orm: PlanORM) -> Plan:
    return Plan(
        plan_id=orm.plan_id,
        name=orm.name,
        cpu_millicores=orm.cpu_millicores,
        memory_mb=orm.memory_mb,
        storage_mb=orm.storage_mb,
        max_replicas=orm.max_replicas,
    )


def application_to_orm(app: Application) -> ApplicationORM:
    """Convert application domain model to ORM."""
    return ApplicationORM(
        application_id=app.application_id,
        owner_id=app.owner_id,
        name=app.name,
        slug=app.slug,
        plan_id=app.plan_id,
        region=app.region,
        git_url=app.git_url,
        git_branch=app.git_branch,
        git_commit=app.git_commit,
        buildpack=app.buildpack,
        stack=app.stack,
        instance_count=app.instance_count,
        status=app.status,
        suspended_reason=app.suspended_reason,
        status_before_build=app.status_before_build,
        current_build_id=app.current_build_id,
        current_deployment_id=app.current_deployment_id,
        created_at=app.created_at,
        updated_at=app.updated_at,
    )


def orm_to_application(orm: ApplicationORM) -> Application:
    return Application(
        application_id=orm.application_id,
        owner_id=orm.owner_id,
        name=orm.name,
        slug=orm.slug,
        plan_id=orm.plan_id,
        region=orm.region,
        git_url=orm.git_url,
        git_branch=orm.git_branch,
        git_commit=orm.git_commit,
        buildpack=orm.buildpack,
        stack=orm.stack,
        instance_count=orm.instance_count,
        status=orm.status,
        suspended_reason=orm.suspended_reason,
        status_before_build=orm.status_before_build,
        current_build_id=orm.current_build_id,
        current_deployment_id=orm.current_deployment_id,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def orm_to_build(orm: BuildORM) -> Build:
    return Build(
        build_id=orm.build_id,
        application_id=orm.application_id,
        build_number=orm.build_number,
        status=orm.status,
        git_commit_sha=orm.git_commit_sha,
        git_commit_message=orm.git_commit_message,
        buildpack=orm.buildpack,
        cache_key=orm.cache_key,
        artifact_size_bytes=orm.artifact_size_bytes,
        build_log=orm.build_log,
        error_message=orm.error_message,
        triggered_by=orm.triggered_by,
        created_at=orm.created_at,
        started_at=orm.started_at,
        completed_at=orm.completed_at,
    )


def orm_to_deployment(orm: DeploymentORM) -> Deployment:
    return Deployment(
        deployment_id=orm.deployment_id,
        application_id=orm.application_id,
        version=orm.version,
        build_id=orm.build_id,
        status=orm.status,
        is_active=orm.is_active,
        node_id=orm.node_id,
        slug_url=orm.slug_url,
        slug_size_bytes=orm.slug_size_bytes,
        rollback_target_id=orm.rollback_target_id,
        error_message=orm.error_message,
        created_at=orm.created_at,
        deployed_at=orm.deployed_at,
    )


def orm_to_cache(orm: BuildCacheORM) -> BuildCacheRecord:
    return BuildCacheRecord(
        application_id=orm.application_id,
        cache_key=orm.cache_key,
        storage_key=orm.storage_key,
        size_bytes=orm.size_bytes,
        created_at=orm.created_at,
        last_used_at=orm.last_used_at,
    )


def _apply_deployment(orm: DeploymentORM, deployment: Deployment) -> None:
    orm.build_id = deployment.build_id
    orm.status = deployment.status
    orm.is_active = deployment.is_active
    orm.node_id = deployment.node_id
    orm.slug_url = deployment.slug_url
    orm.slug_size_bytes = deployment.slug_size_bytes
    orm.rollback_target_id = deployment.rollback_target_id
    orm.error_message = deployment.error_message
    orm.deployed_at = deployment.deployed_at


# ============================================
# PLANS
# ============================================

class PostgresPlanRepository(PlanRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self):
        return self._session_factory()

    def create(self, plan: Plan) -> None:
        session = self._get_session()
        try:
            session.add(PlanORM(
                plan_id=plan.plan_id,
                name=plan.name,
                cpu_millicores=plan.cpu_millicores,
                memory_mb=plan.memory_mb,
                storage_mb=plan.storage_mb,
                max_replicas=plan.max_replicas,
            ))
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Plan {plan.name} already exists") from e
        finally:
            session.close()

    def get(self, plan_id: UUID) -> Optional[Plan]:
        session = self._get_session()
        try:
            orm = session.get(PlanORM, plan_id)
            return orm_to_plan(orm) if orm else None
        finally:
            session.close()


# ============================================
# APPLICATIONS
# ============================================

class PostgresApplicationRepository(ApplicationRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self):
        return self._session_factory()

    def create(self, app: Application) -> None:
        session = self._get_session()
        try:
            session.add(application_to_orm(app))
            session.add(BuildSequenceORM(application_id=app.application_id))
            session.commit()
            logger.info(f"[app_repo] created application {app.application_id} ({app.slug})")
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Slug {app.slug} already taken") from e
        finally:
            session.close()

    def get(self, application_id: UUID) -> Optional[Application]:
        session = self._get_session()
        try:
            orm = session.get(ApplicationORM, application_id)
            return orm_to_application(orm) if orm else None
        finally:
            session.close()

    def update(self, app: Application) -> None:
        session = self._get_session()
        try:
            orm = session.get(ApplicationORM, app.application_id)
            if not orm:
                raise NotFoundError(f"Application {app.application_id} not found")

            orm.name = app.name
            orm.plan_id = app.plan_id
            orm.region = app.region
            orm.git_url = app.git_url
            orm.git_branch = app.git_branch
            orm.git_commit = app.git_commit
            orm.buildpack = app.buildpack
            orm.stack = app.stack
            orm.instance_count = app.instance_count
            orm.status = app.status
            orm.suspended_reason = app.suspended_reason
            orm.status_before_build = app.status_before_build
            orm.current_build_id = app.current_build_id
            orm.current_deployment_id = app.current_deployment_id

            session.commit()
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update application: {e}") from e
        finally:
            session.close()

    def delete(self, application_id: UUID) -> None:
        """Builds, deployments, sequence and cache rows cascade."""
        session = self._get_session()
        try:
            orm = session.get(ApplicationORM, application_id)
            if orm:
                session.delete(orm)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to delete application: {e}") from e
        finally:
            session.close()


# ============================================
# BUILDS
# ============================================

class PostgresBuildRepository(BuildRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self):
        return self._session_factory()

    def create_pending(
        self,
        application_id: UUID,
        triggered_by: Optional[UUID] = None,
    ) -> Tuple[Build, Deployment]:
        session = self._get_session()
        try:
            # The application row serializes allocation even before the
            # sequence row exists (first build of an application)
            app_row = session.query(ApplicationORM).filter(
                ApplicationORM.application_id == application_id
            ).with_for_update().first()
            if app_row is None:
                raise NotFoundError(f"Application {application_id} not found")

            sequence = session.query(BuildSequenceORM).filter(
                BuildSequenceORM.application_id == application_id
            ).with_for_update().first()

            if sequence is None:
                sequence = BuildSequenceORM(
                    application_id=application_id,
                    last_build_number=0,
                    last_deployment_version=0,
                )
                session.add(sequence)
                session.flush()

            sequence.last_build_number += 1
            sequence.last_deployment_version += 1

            build = BuildORM(
                build_id=uuid4(),
                application_id=application_id,
                build_number=sequence.last_build_number,
                triggered_by=triggered_by,
            )
            session.add(build)
            session.flush()

            deployment = DeploymentORM(
                deployment_id=uuid4(),
                application_id=application_id,
                version=sequence.last_deployment_version,
                build_id=build.build_id,
                status=DeploymentStatus.PENDING,
                is_active=False,
            )
            session.add(deployment)

            session.commit()
            logger.info(
                f"[build_repo] allocated build #{build.build_number} / "
                f"v{deployment.version} for {application_id}"
            )
            return orm_to_build(build), orm_to_deployment(deployment)
        except NotFoundError:
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Build number collision for {application_id}") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create build: {e}") from e
        finally:
            session.close()

    def get(self, build_id: UUID) -> Optional[Build]:
        session = self._get_session()
        try:
            orm = session.get(BuildORM, build_id)
            return orm_to_build(orm) if orm else None
        finally:
            session.close()

    def update(self, build: Build) -> None:
        session = self._get_session()
        try:
            orm = session.get(BuildORM, build.build_id)
            if not orm:
                raise NotFoundError(f"Build {build.build_id} not found")

            orm.status = build.status
            orm.git_commit_sha = build.git_commit_sha
            orm.git_commit_message = build.git_commit_message
            orm.buildpack = build.buildpack
            orm.cache_key = build.cache_key
            orm.artifact_size_bytes = build.artifact_size_bytes
            orm.build_log = build.build_log
            orm.error_message = build.error_message
            orm.started_at = build.started_at
            orm.completed_at = build.completed_at

            session.commit()
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update build: {e}") from e
        finally:
            session.close()

    def list_for_application(self, application_id: UUID, limit: int = 50) -> List[Build]:
        session = self._get_session()
        try:
            results = session.query(BuildORM).filter(
                BuildORM.application_id == application_id
            ).order_by(BuildORM.build_number.desc()).limit(limit).all()
            return [orm_to_build(orm) for orm in results]
        finally:
            session.close()


# ============================================
# DEPLOYMENTS
# ============================================

class PostgresDeploymentRepository(DeploymentRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self):
        return self._session_factory()

    def get(self, deployment_id: UUID) -> Optional[Deployment]:
        session = self._get_session()
        try:
            orm = session.get(DeploymentORM, deployment_id)
            return orm_to_deployment(orm) if orm else None
        finally:
            session.close()

    def update(self, deployment: Deployment) -> None:
        session = self._get_session()
        try:
            orm = session.get(DeploymentORM, deployment.deployment_id)
            if not orm:
                raise NotFoundError(f"Deployment {deployment.deployment_id} not found")
            _apply_deployment(orm, deployment)
            session.commit()
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update deployment: {e}") from e
        finally:
            session.close()

    def get_by_version(self, application_id: UUID, version: int) -> Optional[Deployment]:
        session = self._get_session()
        try:
            orm = session.query(DeploymentORM).filter(
                DeploymentORM.application_id == application_id,
                DeploymentORM.version == version,
            ).first()
            return orm_to_deployment(orm) if orm else None
        finally:
            session.close()

    def get_active(self, application_id: UUID) -> Optional[Deployment]:
        session = self._get_session()
        try:
            orm = session.query(DeploymentORM).filter(
                DeploymentORM.application_id == application_id,
                DeploymentORM.is_active.is_(True),
            ).first()
            return orm_to_deployment(orm) if orm else None
        finally:
            session.close()

    def activate(self, deployment: Deployment) -> Optional[Deployment]:
        session = self._get_session()
        try:
            previous_rows = session.query(DeploymentORM).filter(
                DeploymentORM.application_id == deployment.application_id,
                DeploymentORM.is_active.is_(True),
                DeploymentORM.deployment_id != deployment.deployment_id,
            ).with_for_update().all()

            previous = None
            for row in previous_rows:
                row.is_active = False
                previous = row
            session.flush()

            orm = session.get(DeploymentORM, deployment.deployment_id)
            if not orm:
                raise NotFoundError(f"Deployment {deployment.deployment_id} not found")
            deployment.is_active = True
            _apply_deployment(orm, deployment)

            session.commit()
            return orm_to_deployment(previous) if previous is not None else None
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to activate deployment: {e}") from e
        finally:
            session.close()

    def list_for_application(self, application_id: UUID, limit: int = 50) -> List[Deployment]:
        session = self._get_session()
        try:
            results = session.query(DeploymentORM).filter(
                DeploymentORM.application_id == application_id
            ).order_by(DeploymentORM.version.desc()).limit(limit).all()
            return [orm_to_deployment(orm) for orm in results]
        finally:
            session.close()


# ============================================
# BUILD CACHE
# ============================================

class PostgresBuildCacheRepository(BuildCacheRepository):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self):
        return self._session_factory()

    def get(self, application_id: UUID, cache_key: str) -> Optional[BuildCacheRecord]:
        session = self._get_session()
        try:
            orm = session.get(BuildCacheORM, (application_id, cache_key))
            return orm_to_cache(orm) if orm else None
        finally:
            session.close()

    def upsert(self, record: BuildCacheRecord) -> None:
        session = self._get_session()
        try:
            orm = session.get(BuildCacheORM, (record.application_id, record.cache_key))
            if orm is None:
                orm = BuildCacheORM(
                    application_id=record.application_id,
                    cache_key=record.cache_key,
                    created_at=record.created_at,
                )
                session.add(orm)
            orm.storage_key = record.storage_key
            orm.size_bytes = record.size_bytes
            orm.last_used_at = record.last_used_at
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to save cache record: {e}") from e
        finally:
            session.close()

    def delete(self, application_id: UUID, cache_key: str) -> None:
        session = self._get_session()
        try:
            session.query(BuildCacheORM).filter(
                BuildCacheORM.application_id == application_id,
                BuildCacheORM.cache_key == cache_key,
            ).delete(synchronize_session=False)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to delete cache record: {e}") from e
        finally:
            session.close()

    def list_for_application(self, application_id: UUID) -> List[BuildCacheRecord]:
        session = self._get_session()
        try:
            results = session.query(BuildCacheORM).filter(
                BuildCacheORM.application_id == application_id
            ).all()
            return [orm_to_cache(orm) for orm in results]
        finally:
            session.close()

    def list_all(self) -> List[BuildCacheRecord]:
        session = self._get_session()
        try:
            return [orm_to_cache(orm) for orm in session.query(BuildCacheORM).all()]
        finally:
            session.close()
