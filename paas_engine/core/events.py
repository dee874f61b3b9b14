"""Job events and emitters."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List
from uuid import UUID

from paas_engine.core.models import Job, utcnow

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "job.enqueued",
    "job.claimed",
    "job.completed",
    "job.retry_scheduled",
    "job.dead_lettered",
    "job.stalled",
    "job.cancelled",
}


@dataclass
class JobEvent:
    """Job lifecycle event."""

    event_type: str
    job_id: UUID
    queue_name: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def enqueued(job: Job) -> "JobEvent":
        return JobEvent(
            event_type="job.enqueued",
            job_id=job.job_id,
            queue_name=job.queue_name,
            timestamp=utcnow(),
            metadata={"name": job.name, "state": job.state.value},
        )

    @staticmethod
    def claimed(job: Job) -> "JobEvent":
        return JobEvent(
            event_type="job.claimed",
            job_id=job.job_id,
            queue_name=job.queue_name,
            timestamp=utcnow(),
            metadata={
                "lease_owner": job.lease_owner,
                "lease_expires_at": job.lease_expires_at.isoformat() if job.lease_expires_at else None,
            },
        )

    @staticmethod
    def completed(job: Job) -> "JobEvent":
        return JobEvent(
            event_type="job.completed",
            job_id=job.job_id,
            queue_name=job.queue_name,
            timestamp=utcnow(),
            metadata={"return_value": job.return_value},
        )

    @staticmethod
    def failed(job: Job) -> "JobEvent":
        """Retry scheduled or dead-lettered, depending on the job's new state."""
        event_type = "job.dead_lettered" if job.is_terminal() else "job.retry_scheduled"
        return JobEvent(
            event_type=event_type,
            job_id=job.job_id,
            queue_name=job.queue_name,
            timestamp=utcnow(),
            metadata={
                "failure_reason": job.failure_reason,
                "attempts_made": job.attempts_made,
                "max_attempts": job.max_attempts,
                "available_at": job.available_at.isoformat() if job.available_at else None,
            },
        )

    @staticmethod
    def stalled(job: Job) -> "JobEvent":
        return JobEvent(
            event_type="job.stalled",
            job_id=job.job_id,
            queue_name=job.queue_name,
            timestamp=utcnow(),
            metadata={"stalled_count": job.stalled_count, "state": job.state.value},
        )

    @staticmethod
    def cancelled(job: Job) -> "JobEvent":
        return JobEvent(
            event_type="job.cancelled",
            job_id=job.job_id,
            queue_name=job.queue_name,
            timestamp=utcnow(),
        )


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[JobEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes events to the process log."""

    def emit(self, events: Iterable[JobEvent]) -> None:
        for event in events:
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")
            logger.info(f"[event] {event.event_type} | queue={event.queue_name} job={event.job_id}")


class RecordingEventEmitter(EventEmitter):
    """Keeps events in memory."""

    def __init__(self):
        self.events: List[JobEvent] = []

    def emit(self, events: Iterable[JobEvent]) -> None:
        for event in events:
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")
            self.events.append(event)

    def of_type(self, event_type: str) -> List[JobEvent]:
        return [e for e in self.events if e.event_type == event_type]


class MultiEventEmitter(EventEmitter):
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[JobEvent]) -> None:
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter."""

    def emit(self, events: Iterable[JobEvent]) -> None:
        pass
