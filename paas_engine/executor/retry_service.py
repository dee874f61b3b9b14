# paas_engine/executor/retry_service.py
"""Queue maintenance: delayed-job promotion and stalled-job recovery."""

import logging
from dataclasses import dataclass

from paas_engine.core.service import JobQueue

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    promoted: int = 0
    recovered: int = 0


class RetryService:
    """
    Keeps retries moving.

    - DELAYED jobs whose backoff elapsed go back to WAITING
    - ACTIVE jobs whose lease expired go back to WAITING, or through the
      failure path once they stalled too often
    """

    def __init__(self, queue: JobQueue, batch_size: int = 100):
        self._queue = queue
        self._batch_size = batch_size

    def process_retries(self) -> MaintenanceResult:
        result = MaintenanceResult(
            promoted=self._queue.promote_delayed(limit=self._batch_size),
            recovered=self._queue.requeue_stalled(limit=self._batch_size),
        )

        if result.promoted:
            logger.info(f"[retry] ✅ Promoted {result.promoted} delayed job(s)")
        if result.recovered:
            logger.warning(f"[retry] Recovered {result.recovered} stalled job(s)")
        return result
