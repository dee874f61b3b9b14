#paas_engine/executor/config.py
from dataclasses import dataclass
from typing import Tuple

from paas_engine.core.models import BILLING_QUEUE, DEPLOY_QUEUE


@dataclass(frozen=True)
class ExecutorConfig:
    worker_id: str

    queue_names: Tuple[str, ...] = (DEPLOY_QUEUE, BILLING_QUEUE)
    poll_interval_seconds: float = 1.0
    max_slots: int = 2
