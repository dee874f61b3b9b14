# paas_engine/infrastructure/memory/repository.py

from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from paas_engine.core.errors import AlreadyExistsError, ConcurrencyError
from paas_engine.core.models import Job, JobState
from paas_engine.core.repository import JobRepository


def _queue_order(job: Job):
    return (-job.priority, job.created_at)


class InMemoryJobRepository(JobRepository):
    def __init__(self):
        self._store: Dict[UUID, Job] = {}
        self._lock = Lock()

    def create(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._store:
                raise AlreadyExistsError(f"Job {job.job_id} already exists")
            self._store[job.job_id] = deepcopy(job)

    def get(self, job_id: UUID) -> Optional[Job]:
        with self._lock:
            job = self._store.get(job_id)
            return deepcopy(job) if job else None

    def update(self, job: Job) -> None:
        with self._lock:
            stored = self._store.get(job.job_id)
            if not stored:
                raise ConcurrencyError(f"Job {job.job_id} not found")

            if stored.version != job.version - 1:
                raise ConcurrencyError(
                    f"Update failed for {job.job_id} - concurrent modification"
                )

            self._store[job.job_id] = deepcopy(job)

    def claim_next(
        self,
        queue_name: str,
        worker_id: str,
        lease_seconds: float,
        now: datetime,
    ) -> Optional[Job]:
        with self._lock:
            candidates = sorted(
                (
                    j for j in self._store.values()
                    if j.queue_name == queue_name and self._is_claimable(j, now)
                ),
                key=_queue_order,
            )
            if not candidates:
                return None

            job = candidates[0]
            job.claim(worker_id, lease_seconds, now=now)
            return deepcopy(job)

    def try_claim(
        self,
        job_id: UUID,
        worker_id: str,
        lease_seconds: float,
        now: datetime,
    ) -> Optional[Job]:
        with self._lock:
            job = self._store.get(job_id)
            if not job or not self._is_claimable(job, now):
                return None

            job.claim(worker_id, lease_seconds, now=now)
            return deepcopy(job)

    def list_by_state(
        self,
        state: JobState,
        queue_name: Optional[str] = None,
        limit: int = 100,
    ) -> Iterable[Job]:
        with self._lock:
            results = sorted(
                (
                    j for j in self._store.values()
                    if j.state == state and (queue_name is None or j.queue_name == queue_name)
                ),
                key=_queue_order,
            )
            return [deepcopy(j) for j in results[:limit]]

    def list_due_delayed(self, now: datetime, limit: int = 100) -> Iterable[Job]:
        with self._lock:
            results = [
                j for j in self._store.values()
                if j.state == JobState.DELAYED and j.available_at <= now
            ]
            return [deepcopy(j) for j in results[:limit]]

    def list_stalled(self, now: datetime, limit: int = 100) -> Iterable[Job]:
        with self._lock:
            results = [
                j for j in self._store.values()
                if j.state == JobState.ACTIVE
                and j.lease_expires_at is not None
                and j.lease_expires_at <= now
            ]
            return [deepcopy(j) for j in results[:limit]]

    def list_pending_for_application(self, application_id: UUID) -> List[Job]:
        with self._lock:
            return [
                deepcopy(j) for j in self._store.values()
                if j.application_id == application_id
                and j.state in (JobState.WAITING, JobState.DELAYED)
            ]

    @staticmethod
    def _is_claimable(job: Job, now: datetime) -> bool:
        if job.state == JobState.WAITING:
            return job.available_at <= now
        if job.state == JobState.DELAYED:
            return job.available_at <= now
        return False
