#tests/test_application_service.py

"""Application records, suspension and usage samples."""

from uuid import uuid4

import pytest

from paas_engine.core.errors import AlreadyExistsError, InvalidStateError, NotFoundError, ValidationError
from paas_engine.core.models import BILLING_QUEUE, DEPLOY_QUEUE, Job, JobState
from paas_engine.domain.billing import UsageSample
from paas_engine.domain.models import ApplicationStatus


class TestCreateApplication:

    def test_defaults(self, app):
        assert app.status == ApplicationStatus.PENDING
        assert app.git_branch == "main"
        assert app.instance_count == 1

    def test_unknown_plan(self, container):
        with pytest.raises(NotFoundError):
            container.applications.create_application(
                owner_id=uuid4(), name="X", slug="x", plan_id=uuid4(), region="us-east",
            )

    def test_instance_count_checked_against_plan(self, container, plan):
        with pytest.raises(ValidationError):
            container.applications.create_application(
                owner_id=uuid4(), name="X", slug="x", plan_id=plan.plan_id, region="us-east", instance_count=4,
            )

    def test_duplicate_slug(self, container, plan, app):
        with pytest.raises(AlreadyExistsError):
            container.applications.create_application(
                owner_id=uuid4(), name="Other", slug="demo", plan_id=plan.plan_id, region="us-east",
            )


class TestSuspension:

    def test_suspend_cancels_pending_jobs(self, container, app):
        scheduled = container.scheduler.schedule_stop(app.application_id)

        suspended = container.applications.suspend(app.application_id, "payment overdue")

        assert suspended.status == ApplicationStatus.SUSPENDED
        assert suspended.suspended_reason == "payment overdue"
        assert container.queue.get(scheduled.job_id).state == JobState.CANCELLED

    def test_restore_without_deployment_is_stopped(self, container, app):
        container.applications.suspend(app.application_id, "abuse")

        restored = container.applications.restore(app.application_id)

        assert restored.status == ApplicationStatus.STOPPED
        assert restored.suspended_reason is None

    def test_restore_with_active_deployment_is_running(self, container, app, node, deploy_app):
        deploy_app(app)
        container.applications.suspend(app.application_id, "abuse")

        assert container.applications.restore(app.application_id).status == ApplicationStatus.RUNNING

    def test_restore_requires_suspension(self, container, app):
        with pytest.raises(InvalidStateError):
            container.applications.restore(app.application_id)

    def test_suspended_application_keeps_status_through_handlers(self, container, app, node, deploy_app):
        deploy_app(app)
        container.applications.suspend(app.application_id, "abuse")

        container.handlers.get("stop")(
            Job(job_id=uuid4(), queue_name=DEPLOY_QUEUE, name="stop", payload={"application_id": str(app.application_id)})
        )

        assert container.applications.get(app.application_id).status == ApplicationStatus.SUSPENDED


class TestUsage:

    def test_usage_job_recorded(self, container):
        app_id = uuid4()
        job_id = container.queue.enqueue(
            BILLING_QUEUE,
            {"application_id": str(app_id), "cpu_millicores": 250, "memory_mb": 128, "request_rate": 1.5},
            name="usage",
        )
        job = container.queue.claim_next(BILLING_QUEUE, "test-worker")

        result = container.handlers.get("usage")(job)

        assert job.job_id == job_id
        assert result == {"application_id": str(app_id), "recorded": True}
        assert container.usage_recorder.recorded == [UsageSample(app_id, 250, 128, 1.5)]

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"application_id": "not-a-uuid"},
            {"application_id": str(uuid4()), "memory_mb": -1},
        ],
    )
    def test_invalid_sample(self, payload):
        with pytest.raises(ValidationError):
            UsageSample.from_payload(payload)
