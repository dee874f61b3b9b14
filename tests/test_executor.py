#tests/test_executor.py

"""Queue worker: handler dispatch, ack/fail and slot bounds."""

import threading

import pytest

from paas_engine.core.errors import ConcurrencyError, TransientInfrastructureError, ValidationError
from paas_engine.core.models import BILLING_QUEUE, DEPLOY_QUEUE, JobState
from paas_engine.core.service import JobQueue
from paas_engine.executor.config import ExecutorConfig
from paas_engine.executor.executor import JobExecutor
from paas_engine.executor.handlers import JobHandlerRegistry
from paas_engine.infrastructure.memory.repository import InMemoryJobRepository


@pytest.fixture
def queue():
    return JobQueue(InMemoryJobRepository(), visibility_timeout=30)


@pytest.fixture
def handlers():
    return JobHandlerRegistry()


def make_executor(queue, handlers, max_slots=2):
    return JobExecutor(
        config=ExecutorConfig(worker_id="queue-worker-test", poll_interval_seconds=0.05, max_slots=max_slots),
        queue=queue,
        handlers=handlers,
    )


class TestJobHandlerRegistry:

    def test_duplicate_registration_rejected(self, handlers):
        handlers.register("deploy", lambda job: None)
        with pytest.raises(ValueError):
            handlers.register("deploy", lambda job: None)

    def test_unknown_handler_is_validation_error(self, handlers):
        with pytest.raises(ValidationError):
            handlers.get("missing")

    def test_names_sorted(self, handlers):
        handlers.register("stop", lambda job: None)
        handlers.register("deploy", lambda job: None)
        assert handlers.names() == ["deploy", "stop"]
        assert "stop" in handlers


class TestJobExecutor:
    """One run_cycle claims jobs; job threads ack or fail them."""

    def test_successful_job_is_acked(self, queue, handlers):
        handlers.register("deploy", lambda job: {"deployed": job.payload["app"]})
        job_id = queue.enqueue(DEPLOY_QUEUE, {"app": "demo"}, name="deploy")
        executor = make_executor(queue, handlers)

        assert executor.run_cycle() == 1
        executor.stop(timeout=5)

        job = queue.get(job_id)
        assert job.state == JobState.COMPLETED
        assert job.return_value == {"deployed": "demo"}

    def test_transient_failure_is_retried(self, queue, handlers):
        def handler(job):
            raise TransientInfrastructureError("runtime agent unreachable")

        handlers.register("deploy", handler)
        job_id = queue.enqueue(DEPLOY_QUEUE, {}, name="deploy")
        executor = make_executor(queue, handlers)

        executor.run_cycle()
        executor.stop(timeout=5)

        job = queue.get(job_id)
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 1
        assert job.failure_reason == "runtime agent unreachable"

    def test_validation_failure_is_dead_lettered(self, queue, handlers):
        def handler(job):
            raise ValidationError("Plan limit: maximum 3 replicas")

        handlers.register("scale", handler)
        job_id = queue.enqueue(DEPLOY_QUEUE, {}, name="scale")
        executor = make_executor(queue, handlers)

        executor.run_cycle()
        executor.stop(timeout=5)

        assert queue.get(job_id).state == JobState.DEAD_LETTER

    def test_job_without_handler_is_dead_lettered(self, queue, handlers):
        job_id = queue.enqueue(DEPLOY_QUEUE, {}, name="unknown")
        executor = make_executor(queue, handlers)

        executor.run_cycle()
        executor.stop(timeout=5)

        job = queue.get(job_id)
        assert job.state == JobState.DEAD_LETTER
        assert "No handler" in job.failure_reason

    def test_claims_no_more_than_free_slots(self, queue, handlers):
        release = threading.Event()

        def slow(job):
            release.wait(5)
            return None

        handlers.register("deploy", slow)
        first = queue.enqueue(DEPLOY_QUEUE, {}, name="deploy")
        second = queue.enqueue(DEPLOY_QUEUE, {}, name="deploy")
        executor = make_executor(queue, handlers, max_slots=1)

        assert executor.run_cycle() == 1
        assert queue.get(second).state == JobState.WAITING

        release.set()
        executor.stop(timeout=5)
        assert queue.get(first).state == JobState.COMPLETED

    def test_polls_billing_queue(self, queue, handlers):
        handlers.register("usage", lambda job: {"recorded": True})
        job_id = queue.enqueue(BILLING_QUEUE, {}, name="usage")
        executor = make_executor(queue, handlers)

        executor.run_cycle()
        executor.stop(timeout=5)

        assert queue.get(job_id).state == JobState.COMPLETED


class ConflictingAckQueue(JobQueue):
    def ack(self, job_id, worker_id, result=None):
        raise ConcurrencyError(f"Update failed for {job_id} - concurrent modification")


class TestAckErrors:

    def test_ack_error_does_not_count_as_failed_attempt(self, handlers):
        queue = ConflictingAckQueue(InMemoryJobRepository(), visibility_timeout=30)
        handlers.register("deploy", lambda job: {"ok": True})
        job_id = queue.enqueue(DEPLOY_QUEUE, {}, name="deploy")
        executor = make_executor(queue, handlers)

        executor.run_cycle()
        executor.stop(timeout=5)

        job = queue.get(job_id)
        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 0
        assert job.failure_reason is None
        assert executor.slots.active_job_ids() == []
