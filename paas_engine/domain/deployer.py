#paas_engine/domain/deployer.py
"""
Deployment job handlers.

Each handler receives a claimed Job from the deploy queue and drives the
application on its node through the runtime agent. Errors propagate so the
executor can retry or dead-letter the job.
"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from paas_engine.builder.cache import BuildCacheService
from paas_engine.builder.slugs import SlugService
from paas_engine.core.errors import (
    CapacityError,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
)
from paas_engine.core.models import Job
from paas_engine.domain.models import (
    Application,
    ApplicationStatus,
    Deployment,
    DeploymentStatus,
    Plan,
    validate_instance_count,
)
from paas_engine.domain.repository import (
    ApplicationRepository,
    DeploymentRepository,
    PlanRepository,
)
from paas_engine.domain.state_machine import transition_application, transition_deployment
from paas_engine.node_manager.models import WorkerNode
from paas_engine.node_manager.repository import NodeRepository
from paas_engine.node_manager.scheduler import CapacityRequirement, NodeScheduler, has_capacity
from paas_engine.runtime.backend import ServiceSpec
from paas_engine.runtime.client import RuntimeAgentClient, RuntimeAgentClientFactory

logger = logging.getLogger(__name__)


class DeploymentService:

    def __init__(
        self,
        *,
        applications: ApplicationRepository,
        plans: PlanRepository,
        deployments: DeploymentRepository,
        nodes: NodeRepository,
        node_scheduler: NodeScheduler,
        runtime_clients: RuntimeAgentClientFactory,
        slugs: SlugService,
        cache: BuildCacheService,
    ):
        self._apps = applications
        self._plans = plans
        self._deployments = deployments
        self._nodes = nodes
        self._node_scheduler = node_scheduler
        self._runtime_clients = runtime_clients
        self._slugs = slugs
        self._cache = cache

    # ============================================
    # DEPLOY / ROLLBACK
    # ============================================

    def handle_deploy(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        return self.deploy(
            UUID(payload["deployment_id"]),
            replicas=payload.get("replicas"),
            rollback=bool(payload.get("rollback", False)),
        )

    def deploy(
        self,
        deployment_id: UUID,
        replicas: Optional[int] = None,
        rollback: bool = False,
    ) -> Dict[str, Any]:
        """
        Place the deployment on a node, run it and make it the active one.

        The previously active deployment becomes inactive (rolled_back when
        this is a rollback). Failures mark the deployment failed and re-raise.
        """
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        app = self._require_app(deployment.application_id)

        try:
            if app.is_suspended():
                raise ValidationError("Application is suspended")
            if not deployment.slug_url:
                raise ValidationError(f"Deployment v{deployment.version} has no slug")

            plan = self._require_plan(app)
            replicas = replicas or app.instance_count or 1
            validate_instance_count(replicas, plan)

            transition_deployment(deployment, DeploymentStatus.DEPLOYING)
            self._deployments.update(deployment)

            node = self._node_scheduler.place(app.region, CapacityRequirement.for_plan(plan, replicas))
            logger.info(
                f"[deployer] 🚀 deploying {app.slug} v{deployment.version} "
                f"x{replicas} on node {node.name}"
            )

            client = self._client_for(node)
            client.run_service(self._service_spec(app, plan, deployment, replicas))
        except Exception as e:
            self._deploy_failed(app.application_id, deployment.deployment_id, e)
            raise

        previous = self._deployments.get_active(app.application_id)
        if previous is not None and previous.deployment_id == deployment.deployment_id:
            previous = None

        deployment.node_id = node.node_id
        deployment.rollback_target_id = previous.deployment_id if previous else None
        transition_deployment(deployment, DeploymentStatus.DEPLOYED)
        self._deployments.activate(deployment)

        if previous is not None:
            if rollback:
                replaced = self._deployments.get(previous.deployment_id)
                transition_deployment(replaced, DeploymentStatus.ROLLED_BACK)
                self._deployments.update(replaced)
            if previous.node_id and previous.node_id != node.node_id:
                self._remove_from_node(app, previous.node_id)

        app = self._require_app(app.application_id)
        app.current_deployment_id = deployment.deployment_id
        app.instance_count = replicas
        self._set_status(app, ApplicationStatus.RUNNING)
        self._apps.update(app)

        action = "rolled back to" if rollback else "deployed"
        logger.info(f"[deployer] ✅ {app.slug} {action} v{deployment.version}")
        return {
            "deployment_id": str(deployment.deployment_id),
            "version": deployment.version,
            "node_id": str(node.node_id),
            "replicas": replicas,
        }

    def _deploy_failed(self, application_id: UUID, deployment_id: UUID, error: Exception) -> None:
        logger.error(f"[deployer] ❌ deployment {deployment_id} failed: {error}")

        deployment = self._deployments.get(deployment_id)
        if deployment is not None:
            if deployment.status == DeploymentStatus.DEPLOYING:
                transition_deployment(deployment, DeploymentStatus.FAILED)
            deployment.error_message = str(error)
            self._deployments.update(deployment)

        app = self._apps.get(application_id)
        if app is not None and app.status == ApplicationStatus.BUILDING:
            has_active = self._deployments.get_active(application_id) is not None
            self._set_status(app, ApplicationStatus.RUNNING if has_active else ApplicationStatus.FAILED)
            self._apps.update(app)

    # ============================================
    # LIFECYCLE
    # ============================================

    def handle_restart(self, job: Job) -> Dict[str, Any]:
        app, deployment, client = self._active_target(job)
        if app.status == ApplicationStatus.STOPPED:
            raise ValidationError(f"Application {app.slug} is stopped")
        client.restart_service(app.service_name)

        self._set_status(app, ApplicationStatus.RUNNING)
        self._apps.update(app)
        logger.info(f"[deployer] restarted {app.slug} v{deployment.version}")
        return {"application_id": str(app.application_id), "status": app.status.value}

    def handle_stop(self, job: Job) -> Dict[str, Any]:
        """Scale to zero. instance_count is kept for the next start."""
        app = self._require_app(UUID(job.payload["application_id"]))
        active = self._deployments.get_active(app.application_id)
        if active is not None and active.node_id:
            self._client_for(self._require_node(active.node_id)).scale_service(app.service_name, 0)

        self._set_status(app, ApplicationStatus.STOPPED)
        self._apps.update(app)
        logger.info(f"[deployer] stopped {app.slug}")
        return {"application_id": str(app.application_id), "status": app.status.value}

    def handle_start(self, job: Job) -> Dict[str, Any]:
        app, deployment, client = self._active_target(job)
        plan = self._require_plan(app)
        replicas = app.instance_count or 1
        validate_instance_count(replicas, plan)

        # Replicas were removed on stop, so the service is recreated from the slug.
        client.run_service(self._service_spec(app, plan, deployment, replicas))

        app.instance_count = replicas
        self._set_status(app, ApplicationStatus.RUNNING)
        self._apps.update(app)
        logger.info(f"[deployer] started {app.slug} with {replicas} replica(s)")
        return {"application_id": str(app.application_id), "replicas": replicas}

    def handle_scale(self, job: Job) -> Dict[str, Any]:
        app = self._require_app(UUID(job.payload["application_id"]))
        replicas = int(job.payload["replicas"])
        plan = self._require_plan(app)
        validate_instance_count(replicas, plan)

        active = self._deployments.get_active(app.application_id)
        if active is not None and active.node_id and app.status == ApplicationStatus.RUNNING:
            node = self._require_node(active.node_id)
            added = replicas - app.instance_count
            if added > 0 and not has_capacity(node, CapacityRequirement.for_plan(plan, added)):
                raise CapacityError(f"Node {node.name} has no headroom for {added} more replica(s)")

            client = self._client_for(node)
            if replicas > 0 and app.instance_count == 0:
                client.run_service(self._service_spec(app, plan, active, replicas))
            else:
                client.scale_service(app.service_name, replicas)
            if replicas == 0:
                self._set_status(app, ApplicationStatus.STOPPED)

        previous = app.instance_count
        app.instance_count = replicas
        self._apps.update(app)
        logger.info(f"[deployer] scaled {app.slug} from {previous} to {replicas}")
        return {"application_id": str(app.application_id), "replicas": replicas}

    def handle_delete(self, job: Job) -> Dict[str, Any]:
        application_id = UUID(job.payload["application_id"])
        app = self._apps.get(application_id)
        if app is None:
            logger.info(f"[deployer] application {application_id} already deleted")
            return {"application_id": str(application_id), "deleted": False}

        node_ids = {
            d.node_id for d in self._deployments.list_for_application(application_id, limit=1000)
            if d.node_id is not None
        }
        for node_id in node_ids:
            self._remove_from_node(app, node_id, raise_errors=True)

        slugs = self._slugs.delete_app_slugs(application_id)
        caches = self._cache.invalidate(application_id)
        self._apps.delete(application_id)

        logger.info(f"[deployer] 🛑 deleted {app.slug} ({slugs} slug(s), {caches} cache(s))")
        return {"application_id": str(application_id), "deleted": True}

    # ============================================
    # INTERNAL HELPERS
    # ============================================

    def _require_app(self, application_id: UUID) -> Application:
        app = self._apps.get(application_id)
        if app is None:
            raise NotFoundError(f"Application {application_id} not found")
        return app

    def _require_plan(self, app: Application) -> Plan:
        plan = self._plans.get(app.plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {app.plan_id} not found")
        return plan

    def _require_node(self, node_id: UUID) -> WorkerNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found")
        return node

    def _active_target(self, job: Job):
        app = self._require_app(UUID(job.payload["application_id"]))
        deployment = self._deployments.get_active(app.application_id)
        if deployment is None or deployment.node_id is None:
            raise ValidationError(f"Application {app.slug} has no active deployment")
        return app, deployment, self._client_for(self._require_node(deployment.node_id))

    def _client_for(self, node: WorkerNode) -> RuntimeAgentClient:
        if not node.runtime_agent_url:
            raise TransientInfrastructureError(f"Node {node.name} has no runtime agent URL")
        return self._runtime_clients.for_url(node.runtime_agent_url)

    def _service_spec(self, app: Application, plan: Plan, deployment: Deployment, replicas: int) -> ServiceSpec:
        return ServiceSpec(
            name=app.service_name,
            slug_url=self._slugs.fetch_url(app.application_id, deployment.deployment_id),
            replicas=replicas,
            memory_mb=plan.memory_mb,
            cpu_millicores=plan.cpu_millicores,
            env={"APP_NAME": app.slug, "DEPLOYMENT_VERSION": str(deployment.version)},
            labels={
                "paas.application_id": str(app.application_id),
                "paas.deployment_id": str(deployment.deployment_id),
            },
        )

    def _remove_from_node(self, app: Application, node_id: UUID, raise_errors: bool = False) -> None:
        node = self._nodes.get(node_id)
        if node is None or not node.runtime_agent_url:
            return
        try:
            self._client_for(node).remove_service(app.service_name)
        except TransientInfrastructureError as e:
            if raise_errors:
                raise
            logger.warning(f"[deployer] failed to remove {app.service_name} from node {node.name}: {e}")

    @staticmethod
    def _set_status(app: Application, status: ApplicationStatus) -> None:
        """Suspended applications keep their status."""
        if app.is_suspended():
            return
        transition_application(app, status)
