"""Job queue service - business logic layer."""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import OperationalError

from paas_engine.core.errors import (
    ConcurrencyError,
    InvalidStateError,
    LeaseError,
    NotFoundError,
    QueueUnavailableError,
)
from paas_engine.core.events import EventEmitter, JobEvent, NullEventEmitter
from paas_engine.core.models import (
    DEFAULT_QUEUE_OPTIONS,
    Job,
    JobOptions,
    JobState,
    utcnow,
)
from paas_engine.core.repository import JobRepository
from paas_engine.core.validation import validate_enqueue, validate_new_job

logger = logging.getLogger(__name__)

# Re-read attempts when a lease renewal races a state change
UPDATE_ATTEMPTS = 3


class JobQueue:
    """
    Durable job queue with lease-based claims.

    Delivery is at-least-once: a job leaves the pending set only when its
    lease owner acks it. Failed jobs are retried with backoff, then
    dead-lettered. Active jobs whose lease expires return to waiting.
    """

    def __init__(
        self,
        repository: JobRepository,
        event_emitter: Optional[EventEmitter] = None,
        *,
        visibility_timeout: float = 60.0,
        poll_interval: float = 1.0,
        max_stalled: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._emitter = event_emitter or NullEventEmitter()
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.max_stalled = max_stalled
        self._clock = clock

    # -------------------------
    # ENQUEUE
    # -------------------------

    def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None,
        *,
        name: Optional[str] = None,
        application_id: Optional[UUID] = None,
    ) -> UUID:
        """Persist a new job and return its id."""
        options = options or DEFAULT_QUEUE_OPTIONS.get(queue_name, JobOptions())
        validate_enqueue(queue_name, payload, options)

        now = self._clock()
        delayed = options.delay_seconds > 0
        job = Job(
            job_id=options.job_id or uuid4(),
            queue_name=queue_name,
            name=name or queue_name,
            payload=dict(payload),
            application_id=application_id,
            state=JobState.DELAYED if delayed else JobState.WAITING,
            priority=options.priority,
            max_attempts=options.attempts,
            backoff=options.backoff,
            available_at=now + timedelta(seconds=options.delay_seconds),
            created_at=now,
        )
        validate_new_job(job)

        try:
            self._repo.create(job)
        except OperationalError as e:
            raise QueueUnavailableError(f"Job store unavailable: {e}") from e

        logger.info(f"[queue] enqueued {job.name} job {job.job_id} on {queue_name}")
        self._emit([JobEvent.enqueued(job)])
        return job.job_id

    # -------------------------
    # STATUS
    # -------------------------

    def get(self, job_id: UUID) -> Job:
        return self._require_job(job_id)

    def get_status(self, job_id: UUID) -> Dict[str, Any]:
        """State, progress, attempts, failure reason and return value."""
        return self._require_job(job_id).status()

    # -------------------------
    # CLAIM
    # -------------------------

    def claim_next(self, queue_name: str, worker_id: str, timeout: float = 0.0) -> Optional[Job]:
        """
        Claim the next available job, polling for up to `timeout` seconds.
        Returns None when nothing became available.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                job = self._repo.claim_next(
                    queue_name=queue_name,
                    worker_id=worker_id,
                    lease_seconds=self.visibility_timeout,
                    now=self._clock(),
                )
            except OperationalError as e:
                raise QueueUnavailableError(f"Job store unavailable: {e}") from e

            if job is not None:
                logger.info(f"[queue] {worker_id} claimed {job.name} job {job.job_id}")
                self._emit([JobEvent.claimed(job)])
                return job

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval, remaining))

    def claim(self, job_id: UUID, worker_id: str) -> Optional[Job]:
        """Claim one specific waiting job."""
        job = self._repo.try_claim(
            job_id=job_id,
            worker_id=worker_id,
            lease_seconds=self.visibility_timeout,
            now=self._clock(),
        )
        if job is not None:
            logger.info(f"[queue] {worker_id} claimed {job.name} job {job.job_id}")
            self._emit([JobEvent.claimed(job)])
        return job

    def extend_lease(self, job_id: UUID, worker_id: str) -> None:
        """Renew the visibility timeout of an active job."""
        self._apply(job_id, lambda job: job.renew_lease(worker_id, self.visibility_timeout, now=self._clock()))

    def update_progress(self, job_id: UUID, worker_id: str, progress: int) -> None:
        def set_progress(job: Job) -> None:
            if not job.is_lease_valid(worker_id, self._clock()):
                raise LeaseError(f"Job {job_id} is not leased by {worker_id}")
            job.progress = max(0, min(100, int(progress)))
            job.version += 1

        self._apply(job_id, set_progress)

    # -------------------------
    # ACK / FAIL
    # -------------------------

    def ack(self, job_id: UUID, worker_id: str, result: Optional[Dict[str, Any]] = None) -> Job:
        """Mark an active job completed. Only the lease owner may ack."""
        job = self._apply(job_id, lambda j: j.complete(worker_id, result, now=self._clock()))

        logger.info(f"[queue] ✅ {job.name} job {job.job_id} completed")
        self._emit([JobEvent.completed(job)])
        return job

    def fail(self, job_id: UUID, worker_id: str, error: str, retryable: bool = True) -> Job:
        """Record a failed attempt: schedule a retry or dead-letter the job."""
        job = self._apply(job_id, lambda j: j.fail(worker_id, error, retryable=retryable, now=self._clock()))

        if job.state == JobState.DEAD_LETTER:
            logger.error(
                f"[queue] ❌ {job.name} job {job.job_id} dead-lettered after "
                f"{job.attempts_made}/{job.max_attempts} attempts: {error}"
            )
        else:
            logger.warning(
                f"[queue] {job.name} job {job.job_id} failed "
                f"(attempt {job.attempts_made}/{job.max_attempts}), retry at {job.available_at.isoformat()}: {error}"
            )
        self._emit([JobEvent.failed(job)])
        return job

    # -------------------------
    # MAINTENANCE
    # -------------------------

    def promote_delayed(self, limit: int = 100) -> int:
        """Move DELAYED jobs whose backoff elapsed back to WAITING."""
        now = self._clock()
        promoted = 0
        for job in self._repo.list_due_delayed(now, limit=limit):
            try:
                job.promote(now=now)
                self._repo.update(job)
                promoted += 1
            except (InvalidStateError, ConcurrencyError) as e:
                logger.debug(f"[queue] skip promote {job.job_id}: {e}")
        return promoted

    def requeue_stalled(self, limit: int = 100) -> int:
        """Return ACTIVE jobs with expired leases to WAITING."""
        now = self._clock()
        recovered = 0
        for job in self._repo.list_stalled(now, limit=limit):
            previous_owner = job.lease_owner
            try:
                job.stall(self.max_stalled, now=now)
                self._repo.update(job)
            except (InvalidStateError, ConcurrencyError) as e:
                logger.debug(f"[queue] skip stalled {job.job_id}: {e}")
                continue

            recovered += 1
            logger.warning(
                f"[queue] {job.name} job {job.job_id} stalled (owner {previous_owner}), "
                f"now {job.state.value}"
            )
            events = [JobEvent.stalled(job)]
            if job.state in (JobState.DELAYED, JobState.DEAD_LETTER):
                events.append(JobEvent.failed(job))
            self._emit(events)
        return recovered

    def cancel_pending(self, application_id: UUID) -> int:
        """Cancel WAITING/DELAYED jobs of an application. Active jobs finish."""
        cancelled = 0
        for job in self._repo.list_pending_for_application(application_id):
            try:
                job.cancel(now=self._clock())
                self._repo.update(job)
            except (InvalidStateError, ConcurrencyError) as e:
                logger.debug(f"[queue] skip cancel {job.job_id}: {e}")
                continue
            cancelled += 1
            self._emit([JobEvent.cancelled(job)])

        if cancelled:
            logger.info(f"[queue] cancelled {cancelled} pending job(s) for application {application_id}")
        return cancelled

    def list_waiting(self, queue_name: str, limit: int = 20) -> List[Job]:
        return list(self._repo.list_by_state(JobState.WAITING, queue_name=queue_name, limit=limit))

    def list_dead_letter(self, queue_name: Optional[str] = None, limit: int = 100) -> List[Job]:
        return list(self._repo.list_by_state(JobState.DEAD_LETTER, queue_name=queue_name, limit=limit))

    def retry_dead_letter(self, job_id: UUID) -> Job:
        """Requeue a dead-lettered job with a fresh attempt budget."""
        job = self._require_job(job_id)
        job.retry_from_dead_letter(now=self._clock())
        self._repo.update(job)
        logger.info(f"[queue] dead-lettered job {job_id} requeued")
        self._emit([JobEvent.enqueued(job)])
        return job

    # -------------------------
    # INTERNAL HELPERS
    # -------------------------

    def _require_job(self, job_id: UUID) -> Job:
        job = self._repo.get(job_id)
        if not job:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _apply(self, job_id: UUID, change: Callable[[Job], None]) -> Job:
        """
        Read the job, apply `change` and write it back. A version conflict
        (e.g. the lease was renewed in between) re-reads and re-applies, so
        the change is checked against the latest state.
        """
        for attempt in range(1, UPDATE_ATTEMPTS + 1):
            job = self._require_job(job_id)
            change(job)
            try:
                self._repo.update(job)
                return job
            except ConcurrencyError:
                if attempt == UPDATE_ATTEMPTS:
                    raise
                logger.debug(f"[queue] job {job_id} changed concurrently, re-reading (attempt {attempt})")

    def _emit(self, events) -> None:
        try:
            self._emitter.emit(events)
        except Exception as e:
            logger.error(f"[queue] event emitter failed: {e}", exc_info=True)
