#paas_engine/domain/scheduler.py
"""
Deployment scheduler.

Validates user operations on an application and turns them into queued
jobs. Nothing here touches a node; the job handlers do.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from uuid import UUID

from paas_engine.core.errors import NotFoundError, PaasError, ValidationError
from paas_engine.core.models import (
    BUILD_QUEUE,
    DEFAULT_QUEUE_OPTIONS,
    DEPLOY_QUEUE,
    JobOptions,
)
from paas_engine.core.service import JobQueue
from paas_engine.domain.models import Application, validate_instance_count
from paas_engine.domain.repository import (
    ApplicationRepository,
    DeploymentRepository,
    PlanRepository,
)

logger = logging.getLogger(__name__)


# Higher runs first
PRIORITY_DEPLOY = 3
PRIORITY_SCALE = 4
PRIORITY_LIFECYCLE = 5
PRIORITY_DELETE = 2


@dataclass
class ScheduleResult:
    success: bool
    job_id: Optional[UUID] = None
    build_id: Optional[UUID] = None
    error: Optional[str] = None
    exception: Optional[PaasError] = field(default=None, repr=False, compare=False)

    @classmethod
    def failed(cls, error: PaasError) -> "ScheduleResult":
        return cls(success=False, error=str(error), exception=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "job_id": str(self.job_id) if self.job_id else None,
            "build_id": str(self.build_id) if self.build_id else None,
            "error": self.error,
        }


class DeploymentScheduler:

    def __init__(
        self,
        queue: JobQueue,
        applications: ApplicationRepository,
        plans: PlanRepository,
        deployments: DeploymentRepository,
    ):
        self._queue = queue
        self._apps = applications
        self._plans = plans
        self._deployments = deployments

    # -------------------------
    # BUILD + DEPLOY
    # -------------------------

    def schedule_deployment(
        self,
        application_id: UUID,
        git_commit: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> ScheduleResult:
        try:
            app = self._load(application_id)
            if not app.git_url:
                raise ValidationError("Application has no git repository configured")

            payload = {
                "application_id": str(app.application_id),
                "git_url": app.git_url,
                "git_branch": app.git_branch,
                "git_commit": git_commit or app.git_commit,
                "buildpack": app.buildpack,
                "user_id": str(user_id) if user_id else None,
                "replicas": app.instance_count or 1,
            }
            job_id = self._enqueue(BUILD_QUEUE, "build", app, payload, PRIORITY_DEPLOY)
        except PaasError as e:
            return self._rejected("deployment", application_id, e)

        return ScheduleResult(success=True, job_id=job_id, build_id=job_id)

    def schedule_rollback(self, application_id: UUID, version: int) -> ScheduleResult:
        try:
            app = self._load(application_id)
            target = self._deployments.get_by_version(application_id, version)
            if target is None:
                raise NotFoundError(f"Deployment version {version} not found")
            if not target.has_been_deployed():
                raise ValidationError(f"Deployment version {version} was never deployed")
            if target.is_active:
                raise ValidationError(f"Deployment version {version} is already active")

            payload = {
                "application_id": str(app.application_id),
                "deployment_id": str(target.deployment_id),
                "replicas": app.instance_count or 1,
                "rollback": True,
            }
            job_id = self._enqueue(DEPLOY_QUEUE, "rollback", app, payload, PRIORITY_DEPLOY)
        except PaasError as e:
            return self._rejected("rollback", application_id, e)
        return ScheduleResult(success=True, job_id=job_id)

    # -------------------------
    # LIFECYCLE
    # -------------------------

    def schedule_restart(self, application_id: UUID) -> ScheduleResult:
        return self._lifecycle("restart", application_id, require_active=True)

    def schedule_stop(self, application_id: UUID) -> ScheduleResult:
        return self._lifecycle("stop", application_id, require_active=False)

    def schedule_start(self, application_id: UUID) -> ScheduleResult:
        return self._lifecycle("start", application_id, require_active=True)

    def schedule_scale(self, application_id: UUID, replicas: int) -> ScheduleResult:
        """instance_count changes only when the job runs."""
        try:
            app = self._load(application_id)
            plan = self._plans.get(app.plan_id)
            if plan is None:
                raise NotFoundError(f"Plan {app.plan_id} not found")
            validate_instance_count(replicas, plan)

            payload = {"application_id": str(app.application_id), "replicas": replicas}
            job_id = self._enqueue(DEPLOY_QUEUE, "scale", app, payload, PRIORITY_SCALE)
        except PaasError as e:
            return self._rejected("scale", application_id, e)
        return ScheduleResult(success=True, job_id=job_id)

    def schedule_delete(self, application_id: UUID) -> ScheduleResult:
        """Allowed for suspended applications. Pending jobs are cancelled first."""
        try:
            app = self._load(application_id, allow_suspended=True)
            self._queue.cancel_pending(app.application_id)
            payload = {"application_id": str(app.application_id)}
            job_id = self._enqueue(DEPLOY_QUEUE, "delete", app, payload, PRIORITY_DELETE)
        except PaasError as e:
            return self._rejected("delete", application_id, e)
        return ScheduleResult(success=True, job_id=job_id)

    # -------------------------
    # INTERNAL HELPERS
    # -------------------------

    def _lifecycle(self, action: str, application_id: UUID, require_active: bool) -> ScheduleResult:
        try:
            app = self._load(application_id)
            if require_active and self._deployments.get_active(application_id) is None:
                raise ValidationError(f"Cannot {action}: application has no active deployment")
            payload = {"application_id": str(app.application_id)}
            job_id = self._enqueue(DEPLOY_QUEUE, action, app, payload, PRIORITY_LIFECYCLE)
        except PaasError as e:
            return self._rejected(action, application_id, e)
        return ScheduleResult(success=True, job_id=job_id)

    def _load(self, application_id: UUID, allow_suspended: bool = False) -> Application:
        app = self._apps.get(application_id)
        if app is None:
            raise NotFoundError(f"Application {application_id} not found")
        if app.is_suspended() and not allow_suspended:
            reason = f": {app.suspended_reason}" if app.suspended_reason else ""
            raise ValidationError(f"Application is suspended{reason}")
        return app

    def _enqueue(
        self,
        queue_name: str,
        name: str,
        app: Application,
        payload: Dict[str, Any],
        priority: int,
    ) -> UUID:
        base = DEFAULT_QUEUE_OPTIONS[queue_name]
        job_id = self._queue.enqueue(
            queue_name,
            payload,
            JobOptions(attempts=base.attempts, backoff=base.backoff, priority=priority),
            name=name,
            application_id=app.application_id,
        )
        logger.info(f"[scheduler] {name} scheduled for {app.slug} as job {job_id}")
        return job_id

    @staticmethod
    def _rejected(action: str, application_id: UUID, error: PaasError) -> ScheduleResult:
        logger.warning(f"[scheduler] {action} of {application_id} rejected: {error}")
        return ScheduleResult.failed(error)
