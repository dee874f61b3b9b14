from paas_engine.core.errors import ValidationError
from paas_engine.core.models import QUEUE_NAMES, Job, JobOptions, JobState


def validate_enqueue(queue_name: str, payload, options: JobOptions) -> None:
    # -------------------------
    # Queue
    # -------------------------
    if queue_name not in QUEUE_NAMES:
        raise ValidationError(f"Unknown queue: {queue_name}")

    # -------------------------
    # Payload
    # -------------------------
    if payload is None:
        raise ValidationError("payload is required")

    if not isinstance(payload, dict):
        raise ValidationError("payload must be a dict")

    # -------------------------
    # Options
    # -------------------------
    if options.attempts < 1:
        raise ValidationError("attempts must be at least 1")

    if options.backoff.type not in ("exponential", "fixed"):
        raise ValidationError(f"Unknown backoff type: {options.backoff.type}")

    if options.backoff.delay_seconds < 0:
        raise ValidationError("backoff delay must not be negative")

    if options.delay_seconds < 0:
        raise ValidationError("delay must not be negative")


def validate_new_job(job: Job) -> None:
    if job.state not in (JobState.WAITING, JobState.DELAYED):
        raise ValidationError("new job must start waiting or delayed")

    if job.lease_owner or job.lease_expires_at:
        raise ValidationError("lease must not be set at creation")

    if job.attempts_made != 0 or job.version != 0:
        raise ValidationError("new job must have no attempts and version 0")
