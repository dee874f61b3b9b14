"""Usage samples from the billing queue."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import UUID

from paas_engine.core.errors import ValidationError
from paas_engine.core.models import Job

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageSample:
    application_id: UUID
    cpu_millicores: int = 0
    memory_mb: int = 0
    request_rate: float = 0.0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "UsageSample":
        try:
            sample = cls(
                application_id=UUID(str(payload["application_id"])),
                cpu_millicores=int(payload.get("cpu_millicores") or 0),
                memory_mb=int(payload.get("memory_mb") or 0),
                request_rate=float(payload.get("request_rate") or 0.0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid usage sample: {e}") from e

        if sample.cpu_millicores < 0 or sample.memory_mb < 0 or sample.request_rate < 0:
            raise ValidationError("Usage values must not be negative")
        return sample


class UsageRecorder(ABC):
    """Where usage samples end up. The ledger itself lives elsewhere."""

    @abstractmethod
    def record(self, sample: UsageSample) -> None:
        raise NotImplementedError


class LoggingUsageRecorder(UsageRecorder):

    def __init__(self):
        self.recorded: List[UsageSample] = []

    def record(self, sample: UsageSample) -> None:
        self.recorded.append(sample)
        logger.info(
            f"[billing] usage {sample.application_id}: cpu={sample.cpu_millicores}m "
            f"mem={sample.memory_mb}MB rps={sample.request_rate:.2f}"
        )


class UsageHandler:

    def __init__(self, recorder: UsageRecorder):
        self._recorder = recorder

    def __call__(self, job: Job) -> Optional[Dict[str, Any]]:
        sample = UsageSample.from_payload(job.payload)
        self._recorder.record(sample)
        return {"application_id": str(sample.application_id), "recorded": True}
