"""Job queue domain models."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from paas_engine.core.errors import InvalidStateError, LeaseError


BUILD_QUEUE = "paas-build"
DEPLOY_QUEUE = "paas-deploy"
BILLING_QUEUE = "paas-billing"

QUEUE_NAMES = (BUILD_QUEUE, DEPLOY_QUEUE, BILLING_QUEUE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(Enum):
    """Job lifecycle."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.DEAD_LETTER, JobState.CANCELLED})


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay between attempts."""

    type: str = "exponential"
    delay_seconds: float = 5.0
    multiplier: float = 2.0

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the retry that follows the given number of failures."""
        if attempts_made < 1:
            return 0.0
        if self.type == "fixed":
            return self.delay_seconds
        return self.delay_seconds * (self.multiplier ** (attempts_made - 1))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "delay_seconds": self.delay_seconds,
            "multiplier": self.multiplier,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BackoffPolicy":
        if not data:
            return cls()
        return cls(
            type=data.get("type", "exponential"),
            delay_seconds=float(data.get("delay_seconds", 5.0)),
            multiplier=float(data.get("multiplier", 2.0)),
        )


@dataclass(frozen=True)
class JobOptions:
    """Per-job enqueue options."""

    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    priority: int = 0
    delay_seconds: float = 0.0
    job_id: Optional[UUID] = None


DEFAULT_QUEUE_OPTIONS: Dict[str, JobOptions] = {
    BUILD_QUEUE: JobOptions(attempts=3, backoff=BackoffPolicy("exponential", 5.0, 2.0)),
    DEPLOY_QUEUE: JobOptions(attempts=3, backoff=BackoffPolicy("exponential", 5.0, 2.0)),
    BILLING_QUEUE: JobOptions(attempts=1),
}


@dataclass
class Job:
    """Unit of asynchronous work with lease-based ownership."""

    # Identity
    job_id: UUID
    queue_name: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    application_id: Optional[UUID] = None

    # State
    state: JobState = JobState.WAITING
    priority: int = 0
    progress: int = 0

    # Retry
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    available_at: datetime = field(default_factory=utcnow)
    stalled_count: int = 0

    # Lease
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    # Results
    failure_reason: Optional[str] = None
    return_value: Optional[Dict[str, Any]] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    # Optimistic concurrency
    version: int = 0

    # -------------------------
    # STATE TRANSITIONS
    # -------------------------

    def claim(self, worker_id: str, lease_seconds: float, now: Optional[datetime] = None) -> None:
        """WAITING (or due DELAYED) -> ACTIVE."""
        now = now or utcnow()
        if self.state not in (JobState.WAITING, JobState.DELAYED):
            raise InvalidStateError(f"Cannot claim job from {self.state.value} state")
        if self.available_at and self.available_at > now:
            raise InvalidStateError("Job is not yet available")

        self.state = JobState.ACTIVE
        self.lease_owner = worker_id
        self.lease_expires_at = now + timedelta(seconds=lease_seconds)
        self.started_at = now
        self.version += 1

    def renew_lease(self, worker_id: str, lease_seconds: float, now: Optional[datetime] = None) -> None:
        """Extend visibility of an ACTIVE job."""
        now = now or utcnow()
        self._assert_owner(worker_id, now)
        self.lease_expires_at = now + timedelta(seconds=lease_seconds)
        self.version += 1

    def complete(self, worker_id: str, result: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> None:
        """ACTIVE -> COMPLETED."""
        now = now or utcnow()
        self._assert_owner(worker_id, now)
        self.state = JobState.COMPLETED
        self.return_value = result
        self.progress = 100
        self.finished_at = now
        self._clear_lease()
        self.version += 1

    def fail(
        self,
        worker_id: str,
        reason: str,
        retryable: bool = True,
        now: Optional[datetime] = None,
    ) -> None:
        """ACTIVE -> DELAYED (retry scheduled) or DEAD_LETTER."""
        now = now or utcnow()
        self._assert_owner(worker_id, now)
        self._record_failure(reason, retryable, now)

    def stall(self, max_stalled: int, now: Optional[datetime] = None) -> None:
        """Return an ACTIVE job with an expired lease to WAITING."""
        now = now or utcnow()
        if self.state != JobState.ACTIVE:
            raise InvalidStateError(f"Cannot stall job from {self.state.value} state")
        if self.lease_expires_at and self.lease_expires_at > now:
            raise InvalidStateError("Lease still valid")

        self.stalled_count += 1
        if self.stalled_count > max_stalled:
            self._record_failure("job stalled more than allowable limit", True, now)
            return

        self.state = JobState.WAITING
        self.available_at = now
        self._clear_lease()
        self.version += 1

    def promote(self, now: Optional[datetime] = None) -> None:
        """DELAYED -> WAITING once the backoff elapsed."""
        now = now or utcnow()
        if self.state != JobState.DELAYED:
            raise InvalidStateError(f"Cannot promote job from {self.state.value} state")
        if self.available_at > now:
            raise InvalidStateError("Backoff has not elapsed")
        self.state = JobState.WAITING
        self.version += 1

    def cancel(self, now: Optional[datetime] = None) -> None:
        """WAITING/DELAYED -> CANCELLED. Active jobs are allowed to finish."""
        if self.state not in (JobState.WAITING, JobState.DELAYED):
            raise InvalidStateError(f"Cannot cancel job from {self.state.value} state")
        self.state = JobState.CANCELLED
        self.finished_at = now or utcnow()
        self.version += 1

    def retry_from_dead_letter(self, now: Optional[datetime] = None) -> None:
        """Operator requeue with a fresh attempt budget."""
        now = now or utcnow()
        if self.state != JobState.DEAD_LETTER:
            raise InvalidStateError(f"Cannot retry job from {self.state.value} state")
        self.state = JobState.WAITING
        self.attempts_made = 0
        self.stalled_count = 0
        self.available_at = now
        self.finished_at = None
        self.version += 1

    # -------------------------
    # QUERIES
    # -------------------------

    def is_lease_valid(self, worker_id: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if self.lease_owner != worker_id or not self.lease_expires_at:
            return False
        return self.lease_expires_at > now

    def can_retry(self) -> bool:
        return self.attempts_made < self.max_attempts

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "progress": self.progress,
            "attempts_made": self.attempts_made,
            "failure_reason": self.failure_reason,
            "return_value": self.return_value,
        }

    # -------------------------
    # INTERNALS
    # -------------------------

    def _assert_owner(self, worker_id: str, now: datetime) -> None:
        if self.state != JobState.ACTIVE:
            raise InvalidStateError(f"Job is {self.state.value}, not active")
        if not self.is_lease_valid(worker_id, now):
            raise LeaseError(f"Job {self.job_id} is leased by {self.lease_owner}, not {worker_id}")

    def _record_failure(self, reason: str, retryable: bool, now: datetime) -> None:
        self.attempts_made += 1
        self.failure_reason = reason
        self._clear_lease()

        if retryable and self.can_retry():
            self.state = JobState.DELAYED
            self.available_at = now + timedelta(seconds=self.backoff.delay_for(self.attempts_made))
        else:
            self.state = JobState.DEAD_LETTER
            self.finished_at = now
        self.version += 1

    def _clear_lease(self) -> None:
        self.lease_owner = None
        self.lease_expires_at = None
