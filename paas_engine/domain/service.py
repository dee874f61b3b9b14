#paas_engine/domain/service.py

import logging
from typing import Optional
from uuid import UUID, uuid4

from paas_engine.core.errors import InvalidStateError, NotFoundError
from paas_engine.core.service import JobQueue
from paas_engine.domain.models import (
    Application,
    ApplicationStatus,
    Plan,
    validate_instance_count,
)
from paas_engine.domain.repository import (
    ApplicationRepository,
    DeploymentRepository,
    PlanRepository,
)
from paas_engine.domain.state_machine import transition_application

logger = logging.getLogger(__name__)


class ApplicationService:
    """Application records and account-level status changes."""

    def __init__(
        self,
        applications: ApplicationRepository,
        plans: PlanRepository,
        deployments: DeploymentRepository,
        queue: Optional[JobQueue] = None,
    ):
        self._apps = applications
        self._plans = plans
        self._deployments = deployments
        self._queue = queue

    def create_application(
        self,
        *,
        owner_id: UUID,
        name: str,
        slug: str,
        plan_id: UUID,
        region: str,
        git_url: Optional[str] = None,
        git_branch: str = "main",
        buildpack: Optional[str] = None,
        instance_count: int = 1,
    ) -> Application:
        plan = self._require_plan(plan_id)
        validate_instance_count(instance_count, plan)

        app = Application(
            application_id=uuid4(),
            owner_id=owner_id,
            name=name,
            slug=slug,
            plan_id=plan_id,
            region=region,
            git_url=git_url,
            git_branch=git_branch,
            buildpack=buildpack,
            instance_count=instance_count,
        )
        self._apps.create(app)
        logger.info(f"[apps] created {app.slug} ({app.application_id}) in {region}")
        return app

    def get(self, application_id: UUID) -> Application:
        app = self._apps.get(application_id)
        if app is None:
            raise NotFoundError(f"Application {application_id} not found")
        return app

    def suspend(self, application_id: UUID, reason: str) -> Application:
        """Pending jobs are cancelled; the scheduler rejects new ones."""
        app = self.get(application_id)
        transition_application(app, ApplicationStatus.SUSPENDED)
        app.suspended_reason = reason
        self._apps.update(app)

        if self._queue is not None:
            self._queue.cancel_pending(application_id)
        logger.warning(f"[apps] 🛑 {app.slug} suspended: {reason}")
        return app

    def restore(self, application_id: UUID) -> Application:
        """Back to running when a deployment is active, otherwise stopped."""
        app = self.get(application_id)
        if not app.is_suspended():
            raise InvalidStateError(f"Application {app.slug} is not suspended")

        active = self._deployments.get_active(application_id)
        transition_application(app, ApplicationStatus.RUNNING if active else ApplicationStatus.STOPPED)
        app.suspended_reason = None
        app.status_before_build = None
        self._apps.update(app)
        logger.info(f"[apps] ✅ {app.slug} restored as {app.status.value}")
        return app

    def _require_plan(self, plan_id: UUID) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan
