# paas_engine/core/repository.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from paas_engine.core.models import Job, JobState


class JobRepository(ABC):
    """
    Persistence contract for queue jobs.
    """

    @abstractmethod
    def create(self, job: Job) -> None:
        """
        Persist a new job in one transaction.
        Must fail if job_id already exists.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, job_id: UUID) -> Optional[Job]:
        """
        Fetch job by ID.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def update(self, job: Job) -> None:
        """
        Persist updated job state.
        Must enforce optimistic concurrency (stored version == job.version - 1).
        """
        raise NotImplementedError

    @abstractmethod
    def claim_next(
        self,
        queue_name: str,
        worker_id: str,
        lease_seconds: float,
        now: datetime,
    ) -> Optional[Job]:
        """
        Atomically claim the highest-priority, oldest available job
        (WAITING, or DELAYED with elapsed backoff).
        Two workers never receive the same job.
        """
        raise NotImplementedError

    @abstractmethod
    def try_claim(
        self,
        job_id: UUID,
        worker_id: str,
        lease_seconds: float,
        now: datetime,
    ) -> Optional[Job]:
        """
        Attempt to exclusively claim one specific job.
        Returns the claimed job, or None if it was not claimable.
        """
        raise NotImplementedError

    @abstractmethod
    def list_by_state(
        self,
        state: JobState,
        queue_name: Optional[str] = None,
        limit: int = 100,
    ) -> Iterable[Job]:
        """
        List jobs in a given state, highest priority and oldest first.
        """
        raise NotImplementedError

    @abstractmethod
    def list_due_delayed(self, now: datetime, limit: int = 100) -> Iterable[Job]:
        """
        List DELAYED jobs whose backoff has elapsed.
        """
        raise NotImplementedError

    @abstractmethod
    def list_stalled(self, now: datetime, limit: int = 100) -> Iterable[Job]:
        """
        List ACTIVE jobs whose lease is expired.
        Used for crash recovery.
        """
        raise NotImplementedError

    @abstractmethod
    def list_pending_for_application(self, application_id: UUID) -> Iterable[Job]:
        """
        List WAITING and DELAYED jobs of an application.
        """
        raise NotImplementedError
