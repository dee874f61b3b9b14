#tests/test_deployment_scheduler.py

"""Operation validation and job enqueueing."""

from uuid import uuid4

from paas_engine.core.errors import NotFoundError, ValidationError
from paas_engine.core.models import BUILD_QUEUE, DEPLOY_QUEUE, JobState


class TestScheduleDeployment:

    def test_enqueues_build_job(self, container, app):
        user_id = uuid4()

        result = container.scheduler.schedule_deployment(app.application_id, git_commit="abc123", user_id=user_id)

        assert result.success
        job = container.queue.get(result.job_id)
        assert job.queue_name == BUILD_QUEUE
        assert job.name == "build"
        assert job.priority == 3
        assert job.application_id == app.application_id
        assert job.payload["git_url"] == app.git_url
        assert job.payload["git_branch"] == "main"
        assert job.payload["git_commit"] == "abc123"
        assert job.payload["user_id"] == str(user_id)
        assert job.payload["replicas"] == 1

    def test_requires_git_url(self, container, plan):
        bare = container.applications.create_application(
            owner_id=uuid4(), name="Bare", slug="bare", plan_id=plan.plan_id, region="us-east",
        )

        result = container.scheduler.schedule_deployment(bare.application_id)

        assert not result.success
        assert result.error == "Application has no git repository configured"
        assert isinstance(result.exception, ValidationError)

    def test_unknown_application(self, container):
        result = container.scheduler.schedule_deployment(uuid4())
        assert isinstance(result.exception, NotFoundError)

    def test_suspended_application_rejected(self, container, app):
        container.applications.suspend(app.application_id, "payment overdue")

        result = container.scheduler.schedule_deployment(app.application_id)

        assert not result.success
        assert result.error == "Application is suspended: payment overdue"
        assert container.queue.list_waiting(BUILD_QUEUE) == []


class TestScheduleScale:

    def test_within_plan(self, container, app):
        result = container.scheduler.schedule_scale(app.application_id, 3)

        job = container.queue.get(result.job_id)
        assert job.queue_name == DEPLOY_QUEUE
        assert job.priority == 4
        assert job.payload["replicas"] == 3
        # applied by the job, not here
        assert container.applications.get(app.application_id).instance_count == 1

    def test_over_plan_limit(self, container, app):
        result = container.scheduler.schedule_scale(app.application_id, 4)

        assert not result.success
        assert result.error == "Plan limit: maximum 3 replicas"

    def test_negative(self, container, app):
        result = container.scheduler.schedule_scale(app.application_id, -1)
        assert result.error == "Replica count cannot be negative"

    def test_zero_allowed(self, container, app):
        assert container.scheduler.schedule_scale(app.application_id, 0).success


class TestScheduleLifecycle:

    def test_restart_requires_active_deployment(self, container, app):
        result = container.scheduler.schedule_restart(app.application_id)

        assert not result.success
        assert "no active deployment" in result.error

    def test_start_requires_active_deployment(self, container, app):
        assert not container.scheduler.schedule_start(app.application_id).success

    def test_stop_allowed_without_deployment(self, container, app):
        result = container.scheduler.schedule_stop(app.application_id)

        assert result.success
        assert container.queue.get(result.job_id).priority == 5

    def test_restart_after_deploy(self, container, app, node, deploy_app):
        deploy_app(app)

        result = container.scheduler.schedule_restart(app.application_id)

        job = container.queue.get(result.job_id)
        assert job.name == "restart"
        assert job.priority == 5


class TestScheduleRollback:

    def test_unknown_version(self, container, app):
        result = container.scheduler.schedule_rollback(app.application_id, 7)

        assert isinstance(result.exception, NotFoundError)
        assert result.error == "Deployment version 7 not found"

    def test_active_version_rejected(self, container, app, node, deploy_app):
        deploy_app(app)

        result = container.scheduler.schedule_rollback(app.application_id, 1)

        assert result.error == "Deployment version 1 is already active"

    def test_never_deployed_version_rejected(self, container, app, node, deploy_app):
        deploy_app(app)
        container.pipeline.build(app.application_id, app.git_url, "main")

        result = container.scheduler.schedule_rollback(app.application_id, 2)

        assert result.error == "Deployment version 2 was never deployed"

    def test_enqueues_rollback(self, container, app, node, deploy_app):
        first = deploy_app(app)
        deploy_app(app)

        result = container.scheduler.schedule_rollback(app.application_id, 1)

        job = container.queue.get(result.job_id)
        assert job.name == "rollback"
        assert job.payload["deployment_id"] == str(first.deployment_id)
        assert job.payload["rollback"] is True


class TestScheduleDelete:

    def test_cancels_pending_jobs(self, container, app):
        build = container.scheduler.schedule_deployment(app.application_id)

        result = container.scheduler.schedule_delete(app.application_id)

        assert result.success
        assert container.queue.get(build.job_id).state == JobState.CANCELLED
        job = container.queue.get(result.job_id)
        assert job.priority == 2
        assert job.state == JobState.WAITING

    def test_allowed_when_suspended(self, container, app):
        container.applications.suspend(app.application_id, "abuse")

        assert container.scheduler.schedule_delete(app.application_id).success

    def test_result_to_dict(self, container, app):
        result = container.scheduler.schedule_delete(app.application_id)

        assert result.to_dict() == {
            "success": True,
            "job_id": str(result.job_id),
            "build_id": None,
            "error": None,
        }
