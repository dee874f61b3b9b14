#paas_engine/container.py

"""Dependency injection container - wires all services together."""

import logging
from dataclasses import dataclass
from typing import Optional

from paas_engine.builder.cache import BuildCacheConfig, BuildCacheService
from paas_engine.builder.git import GitClient
from paas_engine.builder.log import LiveLogStore
from paas_engine.builder.pipeline import BuildConfig, BuildPipeline
from paas_engine.builder.slugs import SlugService
from paas_engine.builder.storage import ArtifactStorage, create_storage
from paas_engine.config import PlatformSettings
from paas_engine.core.events import EventEmitter, LoggingEventEmitter, MultiEventEmitter
from paas_engine.core.repository import JobRepository
from paas_engine.core.service import JobQueue
from paas_engine.domain.billing import LoggingUsageRecorder, UsageHandler, UsageRecorder
from paas_engine.domain.deployer import DeploymentService
from paas_engine.domain.repository import (
    ApplicationRepository,
    BuildCacheRepository,
    BuildRepository,
    DeploymentRepository,
    PlanRepository,
)
from paas_engine.domain.scheduler import DeploymentScheduler
from paas_engine.domain.service import ApplicationService
from paas_engine.executor.handlers import JobHandlerRegistry
from paas_engine.executor.retry_service import RetryService
from paas_engine.node_manager.repository import NodeRepository
from paas_engine.node_manager.scheduler import NodeScheduler
from paas_engine.node_manager.service import NodeRegistry
from paas_engine.runtime.backend import ContainerBackend, DockerBackend
from paas_engine.runtime.client import RuntimeAgentClientFactory

logger = logging.getLogger(__name__)


@dataclass
class Repositories:
    jobs: JobRepository
    nodes: NodeRepository
    plans: PlanRepository
    applications: ApplicationRepository
    builds: BuildRepository
    deployments: DeploymentRepository
    build_cache: BuildCacheRepository


@dataclass
class Container:
    settings: PlatformSettings
    repositories: Repositories

    queue: JobQueue
    node_registry: NodeRegistry
    node_scheduler: NodeScheduler

    storage: ArtifactStorage
    slugs: SlugService
    build_cache: BuildCacheService
    pipeline: BuildPipeline
    live_logs: LiveLogStore

    applications: ApplicationService
    scheduler: DeploymentScheduler
    deployer: DeploymentService
    usage_recorder: UsageRecorder

    handlers: JobHandlerRegistry
    retry_service: RetryService


# ============================================
# REPOSITORIES
# ============================================

def postgres_repositories(session_factory) -> Repositories:
    from paas_engine.infrastructure.postgres.domain_repository import (
        PostgresApplicationRepository,
        PostgresBuildCacheRepository,
        PostgresBuildRepository,
        PostgresDeploymentRepository,
        PostgresPlanRepository,
    )
    from paas_engine.infrastructure.postgres.node_repository import PostgresNodeRepository
    from paas_engine.infrastructure.postgres.repository import PostgresJobRepository

    return Repositories(
        jobs=PostgresJobRepository(session_factory),
        nodes=PostgresNodeRepository(session_factory),
        plans=PostgresPlanRepository(session_factory),
        applications=PostgresApplicationRepository(session_factory),
        builds=PostgresBuildRepository(session_factory),
        deployments=PostgresDeploymentRepository(session_factory),
        build_cache=PostgresBuildCacheRepository(session_factory),
    )


def memory_repositories() -> Repositories:
    from paas_engine.infrastructure.memory.domain_repository import (
        InMemoryApplicationRepository,
        InMemoryBuildCacheRepository,
        InMemoryBuildRepository,
        InMemoryDeploymentRepository,
        InMemoryPlanRepository,
    )
    from paas_engine.infrastructure.memory.node_repository import InMemoryNodeRepository
    from paas_engine.infrastructure.memory.repository import InMemoryJobRepository

    deployments = InMemoryDeploymentRepository()
    return Repositories(
        jobs=InMemoryJobRepository(),
        nodes=InMemoryNodeRepository(),
        plans=InMemoryPlanRepository(),
        applications=InMemoryApplicationRepository(),
        builds=InMemoryBuildRepository(deployments),
        deployments=deployments,
        build_cache=InMemoryBuildCacheRepository(),
    )


# ============================================
# SERVICES
# ============================================

def build_container(
    settings: PlatformSettings,
    repositories: Repositories,
    *,
    storage: Optional[ArtifactStorage] = None,
    backend: Optional[ContainerBackend] = None,
    git: Optional[GitClient] = None,
    runtime_clients: Optional[RuntimeAgentClientFactory] = None,
    usage_recorder: Optional[UsageRecorder] = None,
    event_emitter: Optional[EventEmitter] = None,
) -> Container:
    """Construct every service explicitly. Collaborators can be swapped for tests."""
    repos = repositories

    queue = JobQueue(
        repos.jobs,
        event_emitter or MultiEventEmitter([LoggingEventEmitter()]),
        visibility_timeout=settings.visibility_timeout_seconds,
        poll_interval=settings.claim_poll_interval_seconds,
        max_stalled=settings.max_stalled,
    )

    node_registry = NodeRegistry(
        repos.nodes,
        registration_ttl_minutes=settings.registration_token_ttl_minutes,
        alert_cooldown_minutes=settings.capacity_alert_cooldown_minutes,
        require_registration_token=settings.require_registration_token,
    )
    node_scheduler = NodeScheduler(repos.nodes)

    storage = storage or create_storage(settings)
    slugs = SlugService(storage)
    build_cache = BuildCacheService(
        repos.build_cache,
        storage,
        BuildCacheConfig(
            enabled=settings.build_cache_enabled,
            max_size_mb=settings.build_cache_max_size_mb,
            ttl_hours=settings.build_cache_ttl_hours,
        ),
    )

    pipeline = BuildPipeline(
        applications=repos.applications,
        builds=repos.builds,
        deployments=repos.deployments,
        queue=queue,
        git=git or GitClient(),
        backend=backend or DockerBackend(),
        cache=build_cache,
        storage=storage,
        config=BuildConfig(
            workspace_root=settings.build_workspace_root,
            default_buildpack=settings.default_buildpack,
            herokuish_image=settings.herokuish_image,
            default_stack=settings.default_stack,
            timeout_minutes=settings.build_timeout_minutes,
        ),
    )

    applications = ApplicationService(repos.applications, repos.plans, repos.deployments, queue)
    scheduler = DeploymentScheduler(queue, repos.applications, repos.plans, repos.deployments)
    deployer = DeploymentService(
        applications=repos.applications,
        plans=repos.plans,
        deployments=repos.deployments,
        nodes=repos.nodes,
        node_scheduler=node_scheduler,
        runtime_clients=runtime_clients or RuntimeAgentClientFactory(settings.runtime_agent_timeout_seconds),
        slugs=slugs,
        cache=build_cache,
    )

    usage_recorder = usage_recorder or LoggingUsageRecorder()
    handlers = JobHandlerRegistry()
    register_job_handlers(handlers, deployer, usage_recorder)

    return Container(
        settings=settings,
        repositories=repos,
        queue=queue,
        node_registry=node_registry,
        node_scheduler=node_scheduler,
        storage=storage,
        slugs=slugs,
        build_cache=build_cache,
        pipeline=pipeline,
        live_logs=LiveLogStore(),
        applications=applications,
        scheduler=scheduler,
        deployer=deployer,
        usage_recorder=usage_recorder,
        handlers=handlers,
        retry_service=RetryService(queue),
    )


def register_job_handlers(
    registry: JobHandlerRegistry,
    deployer: DeploymentService,
    usage_recorder: UsageRecorder,
) -> None:
    # -------------------------
    # paas-deploy
    # -------------------------
    registry.register("deploy", deployer.handle_deploy)
    registry.register("rollback", deployer.handle_deploy)
    registry.register("restart", deployer.handle_restart)
    registry.register("stop", deployer.handle_stop)
    registry.register("start", deployer.handle_start)
    registry.register("scale", deployer.handle_scale)
    registry.register("delete", deployer.handle_delete)

    # -------------------------
    # paas-billing
    # -------------------------
    registry.register("usage", UsageHandler(usage_recorder))
